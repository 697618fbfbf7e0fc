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
UserInfo endpoint client and the aggregation of claims from the ID Token and UserInfo.
"""

from collections.abc import Iterable
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr, ValidationError

from coreason_oidc.exceptions import (
    CoreasonOIDCError,
    FieldMismatchError,
    MissingClaimError,
    TransportError,
    UnsupportedAlgorithmError,
    UserInfoError,
)
from coreason_oidc.jose import JoseProcessor
from coreason_oidc.keys import SIG, kty_for_alg, select_key
from coreason_oidc.models import IdToken, JWKSet, Scope, UserInfoResponse
from coreason_oidc.transport import DEFAULT_MAX_BYTES, decode_json, safe_fetch
from coreason_oidc.utils.logger import anonymize, logger

tracer = trace.get_tracer(__name__)

SCOPE_CLAIMS: dict[str, tuple[str, ...]] = {
    Scope.PROFILE: (
        "name",
        "family_name",
        "given_name",
        "middle_name",
        "nickname",
        "preferred_username",
        "profile",
        "picture",
        "website",
        "gender",
        "birthdate",
        "zoneinfo",
        "locale",
        "updated_at",
    ),
    Scope.EMAIL: ("email", "email_verified"),
    Scope.ADDRESS: ("address",),
    Scope.PHONE: ("phone_number", "phone_number_verified"),
}

# Claims describing the token rather than the end-user; never copied into the claim set
PROTOCOL_CLAIMS = frozenset(
    {
        "iss",
        "aud",
        "exp",
        "iat",
        "nbf",
        "jti",
        "nonce",
        "auth_time",
        "azp",
        "acr",
        "amr",
        "at_hash",
        "c_hash",
        "sub_jwk",
    }
)


def claims_for_scopes(scopes: Iterable[str]) -> list[str]:
    """Standard claim names released for the given scope values, in declaration order."""
    names: list[str] = []
    for scope in scopes:
        for name in SCOPE_CLAIMS.get(scope, ()):
            if name not in names:
                names.append(name)
    return names


class UserInfoClient:
    """
    Calls the UserInfo endpoint with a bearer access token.

    Plain JSON responses are accepted as-is; `application/jwt` responses are unpacked (decrypted
    and/or verified against the OP's keys).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        jose: JoseProcessor,
        allowed_algorithms: list[str],
        max_response_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.client = client
        self.jose = jose
        self.allowed_algorithms = allowed_algorithms
        self.max_response_bytes = max_response_bytes

    async def fetch(
        self,
        endpoint: str,
        access_token: str,
        keys: JWKSet | None = None,
        decryption_key: Any = None,
    ) -> UserInfoResponse:
        """
        Fetches the end-user's claims.

        Raises:
            UserInfoError: If the token is rejected (401/403) or the response is not a claim set.
            TransportError: On network failure or another non-2xx status.
        """
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json, application/jwt"}
        try:
            response, content = await safe_fetch(
                self.client, endpoint, max_bytes=self.max_response_bytes, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"UserInfo request failed: {e}")
            raise TransportError(f"UserInfo request to {endpoint} failed: {e}") from e

        if response.status_code in (401, 403):
            challenge = response.headers.get("WWW-Authenticate", "")
            logger.warning(f"UserInfo endpoint rejected the access token ({response.status_code})")
            message = f"UserInfo request rejected with {response.status_code}"
            raise UserInfoError(f"{message}: {challenge}" if challenge else message)
        if not response.is_success:
            raise TransportError(f"UserInfo request to {endpoint} failed with HTTP {response.status_code}")

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
        if content_type == "application/jwt":
            data: Any = self._unpack(content.decode("utf-8"), keys, decryption_key)
        else:
            data = decode_json(content, endpoint)

        if not isinstance(data, dict):
            raise UserInfoError("UserInfo response is not a JSON object")
        try:
            return UserInfoResponse(**data)
        except ValidationError as e:
            raise UserInfoError(f"Invalid UserInfo response: {e}") from e

    def _unpack(self, token: str, keys: JWKSet | None, decryption_key: Any) -> dict[str, Any]:
        def resolve(header: dict[str, Any], _payload: dict[str, Any]) -> Any:
            alg = str(header.get("alg"))
            if alg not in self.allowed_algorithms:
                raise UnsupportedAlgorithmError(f"UserInfo response signed with disallowed algorithm '{alg}'")
            if keys is None:
                return None
            return select_key(keys, SIG, kty_for_alg(alg), header.get("kid"))

        # An encrypted-only UserInfo response is permitted (its integrity comes from the JWE)
        return self.jose.unpack(
            token.strip(),
            verification_key=resolve,
            decryption_key=decryption_key,
            allow_unsigned=token.count(".") == 4,
        ).payload


class ClaimsAggregator:
    """
    Resolves the requested claims from the ID Token and, when an access token exists, UserInfo.

    ID Token values win on conflict. A requested claim found in neither source is an error.
    """

    def __init__(self, userinfo: UserInfoClient, pii_salt: SecretStr) -> None:
        self.userinfo = userinfo
        self.pii_salt = pii_salt

    async def resolve(
        self,
        requested_claims: Iterable[str],
        id_token: IdToken,
        access_token: str | SecretStr | None = None,
        endpoint: str | None = None,
        keys: JWKSet | None = None,
        decryption_key: Any = None,
    ) -> UserInfoResponse:
        """
        Builds the end-user claim set.

        Args:
            requested_claims: The claim names the RP asked for.
            id_token: The validated ID Token.
            access_token: The access token issued alongside, if any.
            endpoint: The UserInfo endpoint (required with an access token).
            keys: OP keys for signed UserInfo responses.
            decryption_key: RP key for encrypted UserInfo responses.

        Raises:
            MissingClaimError: If any requested claim is absent from every source.
            FieldMismatchError: If the UserInfo `sub` differs from the ID Token `sub`.
        """
        requested = list(dict.fromkeys(requested_claims))
        with tracer.start_as_current_span("resolve_claims") as span:
            span.set_attribute("oidc.claims.requested", len(requested))
            try:
                merged: dict[str, Any] = {}
                if access_token is not None:
                    if not endpoint:
                        raise UserInfoError("An access token was issued but the OP has no userinfo_endpoint")
                    token = access_token.get_secret_value() if isinstance(access_token, SecretStr) else access_token
                    info = await self.userinfo.fetch(endpoint, token, keys=keys, decryption_key=decryption_key)
                    if info.sub != id_token.sub:
                        raise FieldMismatchError("UserInfo 'sub' does not match the ID Token 'sub'")
                    merged.update(info.as_claims())

                merged.update(id_token.as_claims())
                for name in PROTOCOL_CLAIMS:
                    merged.pop(name, None)

                missing = [name for name in requested if merged.get(name) is None]
                if missing:
                    raise MissingClaimError(f"Requested claims not provided: {', '.join(missing)}", missing)

                span.set_attribute("enduser.id", anonymize(id_token.sub, self.pii_salt.get_secret_value()))
                span.set_status(Status(StatusCode.OK))
                return UserInfoResponse(**merged)

            except CoreasonOIDCError as e:
                logger.warning(f"Claim resolution failed: {type(e).__name__}: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
