# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

"""
Self-issued OpenID Provider support.

The "provider" is the end-user's own key: the ID Token is signed with a key advertised inline as
`sub_jwk`, so there is no discovery, no issuer allow-list and no JWKS fetch.
"""

import json
import time
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlparse

from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from pydantic import SecretStr

from coreason_oidc.exceptions import InvalidKeySetError, InvalidRequestError, MalformedResponseError
from coreason_oidc.jose import JoseProcessor
from coreason_oidc.keys import public_jwk, thumbprint
from coreason_oidc.models import AuthorizationRequest, ImplicitResponse, ResponseType
from coreason_oidc.response_parser import ResponseParser
from coreason_oidc.userinfo import claims_for_scopes
from coreason_oidc.utils.logger import logger
from coreason_oidc.utils.uris import append_query, require_https
from coreason_oidc.validator import IdTokenValidator

SELF_ISSUED_SCHEME = "openid"
SELF_ISSUED_ALGORITHMS = ["RS256"]


class SelfIssuedPeer(Protocol):
    """Answers a self-issued authorization request URL with the redirect back to the RP."""

    async def respond(self, url: str) -> str: ...


class SelfIssuedIdentity:
    """
    The end-user's local identity: a private key and the claims it is willing to release.

    Acting as its own OP, it answers a self-issued request with an ID Token whose `iss` and `sub`
    are the thumbprint of its public key, which travels in the token as `sub_jwk`.
    """

    def __init__(
        self,
        private_key: Any,
        claims: dict[str, Any] | None = None,
        alg: str = "RS256",
        lifetime: int = 300,
    ) -> None:
        try:
            self.key = JsonWebKey.import_key(private_key, {"kty": "RSA"})
        except (JoseError, ValueError, TypeError) as e:
            raise InvalidKeySetError(f"Self-issued identity needs an RSA private key: {e}") from e
        self.sub_jwk = public_jwk(self.key)
        self.subject = thumbprint(self.sub_jwk)
        self.claims = dict(claims or {})
        self.alg = alg
        self.lifetime = lifetime
        self.jose = JoseProcessor(signing_algorithms=[alg])

    def released_claims(self, params: dict[str, str]) -> dict[str, Any]:
        names = claims_for_scopes(params.get("scope", "").split())
        if params.get("claims"):
            requested = json.loads(params["claims"])
            names.extend(requested.get("id_token", {}) or {})
        return {name: self.claims[name] for name in names if name in self.claims}

    def issue(self, params: dict[str, str]) -> str:
        """Signs the ID Token answering the request `params`."""
        now = int(time.time())
        payload: dict[str, Any] = self.released_claims(params)
        payload.update(
            {
                "iss": self.subject,
                "sub": self.subject,
                "aud": params["client_id"],
                "iat": now,
                "exp": now + self.lifetime,
                "sub_jwk": self.sub_jwk,
            }
        )
        if params.get("nonce"):
            payload["nonce"] = params["nonce"]
        return self.jose.sign(payload, self.key, self.alg)

    async def respond(self, url: str) -> str:
        params = dict(parse_qsl(urlparse(url).query, keep_blank_values=True))
        if "client_id" not in params or "redirect_uri" not in params:
            raise InvalidRequestError("Self-issued request needs client_id and redirect_uri")
        fragment = {"id_token": self.issue(params)}
        if "state" in params:
            fragment["state"] = params["state"]
        return f"{params['redirect_uri']}#{urlencode(fragment)}"


class SelfIssuedAdapter:
    """
    Runs the self-issued flow and validates the result.

    Validation skips discovery and the issuer allow-list. The key comes from the token's own
    `sub_jwk`, `iss` must equal `sub`, and the nonce and expiry checks apply as usual.
    """

    def __init__(
        self,
        jose: JoseProcessor,
        pii_salt: SecretStr,
        leeway: int = 0,
        allowed_algorithms: list[str] | None = None,
    ) -> None:
        self.jose = jose
        self.pii_salt = pii_salt
        self.leeway = leeway
        self.allowed_algorithms = allowed_algorithms or SELF_ISSUED_ALGORITHMS

    def validator_for(self, request: AuthorizationRequest) -> IdTokenValidator:
        if not request.client_id:
            raise InvalidRequestError("Self-issued requests need a client_id (the RP redirect URI)")
        return IdTokenValidator(
            self.jose,
            client_id=request.client_id,
            # Not checked in self-issued mode; iss must equal sub instead
            issuer=request.client_id,
            pii_salt=self.pii_salt,
            allowed_algorithms=self.allowed_algorithms,
            leeway=self.leeway,
        )

    def check_request(self, endpoint: str, request: AuthorizationRequest) -> None:
        require_https(endpoint, "self_issued_endpoint", exempt_schemes=(SELF_ISSUED_SCHEME,))
        if urlparse(endpoint).scheme.lower() != SELF_ISSUED_SCHEME:
            raise InvalidRequestError(f"Self-issued endpoint must use the '{SELF_ISSUED_SCHEME}:' scheme")
        request.verify()
        if request.response_type != [ResponseType.ID_TOKEN.value]:
            raise InvalidRequestError("Self-issued requests must use response_type=id_token")

    async def authenticate(
        self,
        endpoint: str,
        request: AuthorizationRequest,
        identity: SelfIssuedPeer,
    ) -> ImplicitResponse:
        """
        Sends `request` to the self-issued `endpoint` and validates the ID Token that comes back.

        Args:
            endpoint: The self-issued OP endpoint (`openid://`).
            request: An `id_token` request; `client_id` is the RP's redirect URI.
            identity: The peer holding the end-user's key.

        Returns:
            ImplicitResponse: The validated response.

        Raises:
            InvalidRequestError: For a non-`openid:` endpoint or a request other than `id_token`.
            NonceMismatchError, IssuerMismatchError, TokenExpiredError, CryptographicError:
                From ID Token validation.
        """
        self.check_request(endpoint, request)
        url = append_query(endpoint, request.to_query())
        logger.info("Starting self-issued authentication")
        redirect = await identity.respond(url)
        parser = ResponseParser(self.validator_for(request))
        response = parser.parse(redirect, request, self_issued=True)
        if not isinstance(response, ImplicitResponse):
            raise MalformedResponseError("Self-issued OPs answer with an implicit response")
        return response
