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
Custom exceptions for the coreason-oidc package.

Errors fall into four families (validation, cryptographic, protocol and transport).
None of them is retried by the engine: authorization responses are single-use.
"""


class CoreasonOIDCError(Exception):
    """Base exception for all coreason-oidc errors."""


# Validation


class OIDCValidationError(CoreasonOIDCError):
    """Raised when a request or client metadata is invalid before transmission."""


class MissingRequiredScopeError(OIDCValidationError):
    """Raised when an authorization request does not contain the `openid` scope."""


class SchemeViolationError(OIDCValidationError):
    """
    Raised when a URI that must use https does not.

    Attributes:
        field: The name of the offending metadata field (e.g. `jwks_uri`).
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class FieldMismatchError(OIDCValidationError):
    """Raised when a value returned by the OP does not match what was sent."""


class InvalidRequestError(OIDCValidationError):
    """Raised when an authorization request is structurally invalid."""


# Cryptographic


class CryptographicError(CoreasonOIDCError):
    """Base class for JOSE and key handling failures."""


class MalformedTokenError(CryptographicError):
    """Raised when a compact JWS/JWE cannot be parsed."""


class UnsupportedAlgorithmError(CryptographicError):
    """Raised when a token or request uses an algorithm that is not allowed."""


class SignatureVerificationError(CryptographicError):
    """Raised when the token's signature cannot be verified."""


class DecryptionError(CryptographicError):
    """Raised when a JWE cannot be decrypted with the given key."""


class KeyNotFoundError(CryptographicError):
    """Raised when no key matches the requested use, type or key id."""


class InvalidKeySetError(CryptographicError):
    """Raised when a JWK Set document is not well formed."""


# Protocol


class ProtocolError(CoreasonOIDCError):
    """Base class for OpenID Connect protocol violations."""


class StateMismatchError(ProtocolError):
    """Raised when the response `state` differs from the request `state`."""


class NonceMismatchError(ProtocolError):
    """Raised when the ID Token `nonce` differs from the request `nonce`."""


class IssuerMismatchError(ProtocolError):
    """Raised when the issuer does not match the expected value."""


class AudienceMismatchError(ProtocolError):
    """Raised when the ID Token audience does not contain the client id."""


class TokenExpiredError(ProtocolError):
    """Raised when the provided token has expired."""


class HashBindingMismatchError(ProtocolError):
    """Raised when `at_hash` or `c_hash` is missing or does not bind the token."""


class MissingClaimError(ProtocolError):
    """
    Raised when requested claims cannot be found.

    Attributes:
        claims: The names of the missing claims.
    """

    def __init__(self, message: str, claims: list[str] | None = None) -> None:
        super().__init__(message)
        self.claims = claims or []


class MalformedResponseError(ProtocolError):
    """Raised when a response lacks the mandatory fields of its response type."""


class AuthorizationResponseError(ProtocolError):
    """Raised when the OP redirects back with an `error` parameter."""

    def __init__(self, error: str, description: str | None = None) -> None:
        message = f"Authorization failed: {error}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message)
        self.error = error
        self.description = description


class RegistrationError(ProtocolError):
    """Raised when the OP rejects a client registration request."""


class UserInfoError(ProtocolError):
    """Raised when the UserInfo endpoint rejects the request or returns garbage."""


# Transport


class TransportError(CoreasonOIDCError):
    """Raised when a network call to the OP fails."""


class OversizedResponseError(TransportError):
    """Raised when an HTTP response is too large."""


class SecurityError(TransportError):
    """Raised when a security violation is detected (SSRF, DNS rebinding)."""


class CallbackTimeoutError(CoreasonOIDCError):
    """Raised when the authorization response does not arrive in time."""
