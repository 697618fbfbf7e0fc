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
IdTokenValidator component for validating ID Token signatures and claims.
"""

import hmac
import time
from typing import Any

from authlib.common.encoding import to_bytes
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from authlib.oidc.core.util import create_half_hash
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr, ValidationError

from coreason_oidc.exceptions import (
    AudienceMismatchError,
    CoreasonOIDCError,
    HashBindingMismatchError,
    IssuerMismatchError,
    KeyNotFoundError,
    MalformedResponseError,
    NonceMismatchError,
    TokenExpiredError,
    UnsupportedAlgorithmError,
)
from coreason_oidc.jose import JoseProcessor
from coreason_oidc.keys import SIG, kty_for_alg, select_key, thumbprint
from coreason_oidc.models import IdToken, JWKSet
from coreason_oidc.utils.logger import anonymize, logger

tracer = trace.get_tracer(__name__)


class IdTokenValidator:
    """
    Validates ID Tokens against the OP's keys and the originating request.

    Attributes:
        jose (JoseProcessor): The JOSE processor used to unpack tokens.
        client_id (str): The expected audience.
        issuer (str): The expected issuer. Not used for self-issued tokens.
        allowed_algorithms (list[str]): Accepted signing algorithms.
    """

    def __init__(
        self,
        jose: JoseProcessor,
        client_id: str,
        issuer: str,
        pii_salt: SecretStr,
        allowed_algorithms: list[str],
        leeway: int = 0,
        decryption_key: Any = None,
    ) -> None:
        """
        Initialize the IdTokenValidator.

        Args:
            jose: The JOSE processor.
            client_id: The expected audience (aud) claim.
            issuer: The expected issuer (iss) claim.
            pii_salt: Salt for anonymizing subjects in logs.
            allowed_algorithms: List of allowed signing algorithms. `none` is never accepted.
            leeway: Acceptable clock skew in seconds. Defaults to 0.
            decryption_key: The RP's private key, for encrypted ID Tokens.
        """
        self.jose = jose
        self.client_id = client_id
        self.issuer = issuer.rstrip("/")
        self.pii_salt = pii_salt
        self.allowed_algorithms = allowed_algorithms
        self.leeway = leeway
        self.decryption_key = decryption_key

    def validate(
        self,
        id_token: str,
        nonce: str | None,
        keys: JWKSet | None = None,
        access_token: str | None = None,
        code: str | None = None,
        self_issued: bool = False,
    ) -> IdToken:
        """
        Validates the ID Token signature and claims.

        Emits an OpenTelemetry span `validate_id_token`.

        Args:
            id_token: The compact ID Token (JWS, or JWE wrapping a JWS).
            nonce: The nonce sent in the authorization request.
            keys: The OP's JWK Set snapshot. Ignored for self-issued tokens.
            access_token: Access token from the same response; `at_hash` must bind it.
            code: Code from the same front-channel response; `c_hash` must bind it.
            self_issued: Verify against the embedded `sub_jwk` and require `iss == sub`.

        Returns:
            IdToken: The validated claims.

        Raises:
            CryptographicError: For malformed tokens, bad signatures or missing keys.
            MalformedResponseError: If required claims are missing.
            IssuerMismatchError, AudienceMismatchError, TokenExpiredError, NonceMismatchError,
            HashBindingMismatchError: For the corresponding claim failures.
        """
        with tracer.start_as_current_span("validate_id_token") as span:
            span.set_attribute("oidc.self_issued", self_issued)
            try:
                if self_issued:
                    key_source: Any = self._sub_jwk_key
                else:
                    if keys is None:
                        raise KeyNotFoundError("No provider keys available to verify the ID Token")
                    key_source = self._provider_key_resolver(keys)

                header, payload, _ = self.jose.unpack(
                    id_token, verification_key=key_source, decryption_key=self.decryption_key
                )
                alg = str(header.get("alg"))
                if alg not in self.allowed_algorithms:
                    raise UnsupportedAlgorithmError(f"ID Token signed with disallowed algorithm '{alg}'")

                try:
                    claims = IdToken(**payload)
                except ValidationError as e:
                    missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
                    raise MalformedResponseError(f"ID Token is missing or has invalid claims: {missing}") from e

                if self_issued:
                    self._check_self_issued(claims)
                else:
                    self._check_issuer(claims)
                self._check_audience(claims)
                self._check_expiry(claims)
                self._check_nonce(claims, nonce)
                self._check_hash("at_hash", claims.at_hash, access_token, alg)
                self._check_hash("c_hash", claims.c_hash, code, alg)

                user_hash = anonymize(claims.sub, self.pii_salt.get_secret_value())
                logger.info(f"ID Token validated for user {user_hash}")
                span.set_attribute("enduser.id", user_hash)
                span.set_status(Status(StatusCode.OK))
                return claims

            except CoreasonOIDCError as e:
                logger.warning(f"ID Token validation failed: {type(e).__name__}: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    def _provider_key_resolver(self, keys: JWKSet) -> Any:
        def resolve(header: dict[str, Any], _payload: dict[str, Any]) -> Any:
            alg = str(header.get("alg"))
            if alg not in self.allowed_algorithms:
                raise UnsupportedAlgorithmError(f"ID Token signed with disallowed algorithm '{alg}'")
            return select_key(keys, SIG, kty_for_alg(alg), header.get("kid"))

        return resolve

    @staticmethod
    def _sub_jwk_key(_header: dict[str, Any], payload: dict[str, Any]) -> Any:
        sub_jwk = payload.get("sub_jwk")
        if not isinstance(sub_jwk, dict):
            raise KeyNotFoundError("Self-issued ID Token does not carry a 'sub_jwk'")
        if "d" in sub_jwk:
            raise KeyNotFoundError("Self-issued 'sub_jwk' must be a public key")
        try:
            return JsonWebKey.import_key(sub_jwk)
        except (JoseError, ValueError) as e:
            raise KeyNotFoundError(f"Self-issued 'sub_jwk' is not a usable key: {e}") from e

    def _check_issuer(self, claims: IdToken) -> None:
        if claims.iss.rstrip("/") != self.issuer:
            raise IssuerMismatchError(f"Invalid issuer: expected '{self.issuer}', got '{claims.iss}'")

    def _check_self_issued(self, claims: IdToken) -> None:
        if claims.iss != claims.sub:
            raise IssuerMismatchError("Self-issued ID Token must have iss == sub")
        if claims.sub_jwk is None or claims.sub != thumbprint(claims.sub_jwk):
            raise IssuerMismatchError("Self-issued ID Token 'sub' is not the thumbprint of 'sub_jwk'")

    def _check_audience(self, claims: IdToken) -> None:
        if self.client_id not in claims.audiences:
            raise AudienceMismatchError(f"Invalid audience: '{self.client_id}' not in {claims.audiences}")
        if claims.azp is not None and claims.azp != self.client_id:
            raise AudienceMismatchError(f"Invalid authorized party: '{claims.azp}'")

    def _check_expiry(self, claims: IdToken) -> None:
        if time.time() > claims.exp + self.leeway:
            raise TokenExpiredError(f"ID Token has expired (exp={claims.exp})")

    def _check_nonce(self, claims: IdToken, nonce: str | None) -> None:
        if nonce is None:
            return
        if claims.nonce is None or not hmac.compare_digest(claims.nonce.encode("utf-8"), nonce.encode("utf-8")):
            raise NonceMismatchError("ID Token nonce does not match the request nonce")

    def _check_hash(self, claim: str, value: str | None, bound: str | None, alg: str) -> None:
        if bound is None:
            return
        if value is None:
            raise HashBindingMismatchError(f"ID Token is missing '{claim}'")
        expected = create_half_hash(bound, alg)
        if expected is None:
            raise UnsupportedAlgorithmError(f"Cannot compute '{claim}' for algorithm '{alg}'")
        if not hmac.compare_digest(to_bytes(expected), value.encode("utf-8")):
            raise HashBindingMismatchError(f"ID Token '{claim}' does not match")
