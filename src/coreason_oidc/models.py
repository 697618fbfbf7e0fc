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
Data models for the coreason-oidc package.
"""

import json
import secrets
from collections.abc import Iterable, Iterator
from enum import StrEnum
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, EmailStr, Field, SecretStr, field_validator, model_validator

from coreason_oidc.exceptions import InvalidRequestError, MissingRequiredScopeError


class Scope(StrEnum):
    OPENID = "openid"
    PROFILE = "profile"
    EMAIL = "email"
    ADDRESS = "address"
    PHONE = "phone"
    OFFLINE_ACCESS = "offline_access"


class ResponseType(StrEnum):
    CODE = "code"
    ID_TOKEN = "id_token"
    TOKEN = "token"


class FlowKind(StrEnum):
    CODE = "code"
    IMPLICIT = "implicit"
    HYBRID = "hybrid"


def flow_for(response_types: Iterable[str]) -> FlowKind:
    """
    Maps a `response_type` value set to the flow that handles it.

    Args:
        response_types: The response type values (order irrelevant).

    Returns:
        FlowKind: CODE for `code`, IMPLICIT for `id_token [token]`, HYBRID for `code` plus anything.

    Raises:
        InvalidRequestError: For an empty, unknown or non-OpenID combination (e.g. bare `token`).
    """
    types = set(response_types)
    known = {member.value for member in ResponseType}
    if not types or not types <= known:
        raise InvalidRequestError(f"Unsupported response_type: {' '.join(sorted(types)) or '<empty>'}")
    if types == {ResponseType.CODE}:
        return FlowKind.CODE
    if ResponseType.CODE in types:
        return FlowKind.HYBRID
    if ResponseType.ID_TOKEN in types:
        return FlowKind.IMPLICIT
    raise InvalidRequestError("response_type 'token' alone is not an OpenID Connect flow")


def new_state() -> str:
    return secrets.token_urlsafe(24)


def _split_spaced(v: Any) -> Any:
    if isinstance(v, str):
        return v.split()
    return v


URI_FIELDS = (
    "jwks_uri",
    "logo_uri",
    "client_uri",
    "policy_uri",
    "tos_uri",
    "sector_identifier_uri",
    "initiate_login_uri",
    "registration_client_uri",
)
URI_LIST_FIELDS = ("redirect_uris", "request_uris", "post_logout_redirect_uris")


class ClientMetadata(BaseModel):
    """
    Client metadata submitted to a registration endpoint (OpenID Connect Dynamic Registration).

    Unknown registration fields are kept and sent as-is.
    """

    model_config = ConfigDict(extra="allow")

    application_type: Literal["web", "native"] = "web"
    redirect_uris: list[str] = Field(..., min_length=1)
    response_types: list[str] = Field(default_factory=lambda: [ResponseType.CODE.value])
    grant_types: list[str] | None = None
    contacts: list[EmailStr] | None = None
    client_name: str | None = None
    logo_uri: str | None = None
    client_uri: str | None = None
    policy_uri: str | None = None
    tos_uri: str | None = None
    jwks_uri: str | None = None
    jwks: dict[str, Any] | None = None
    sector_identifier_uri: str | None = None
    subject_type: str | None = None
    id_token_signed_response_alg: str | None = None
    id_token_encrypted_response_alg: str | None = None
    id_token_encrypted_response_enc: str | None = None
    userinfo_signed_response_alg: str | None = None
    userinfo_encrypted_response_alg: str | None = None
    userinfo_encrypted_response_enc: str | None = None
    request_object_signing_alg: str | None = None
    request_object_encryption_alg: str | None = None
    request_object_encryption_enc: str | None = None
    token_endpoint_auth_method: str | None = None
    default_max_age: int | None = None
    require_auth_time: bool | None = None
    initiate_login_uri: str | None = None
    request_uris: list[str] | None = None
    post_logout_redirect_uris: list[str] | None = None

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: list[str]) -> list[str]:
        """Redirect URIs must be absolute and must not carry a fragment."""
        for uri in v:
            parsed = urlparse(uri)
            if not parsed.scheme or not (parsed.netloc or parsed.path):
                raise ValueError(f"Redirect URI '{uri}' is not an absolute URI")
            if parsed.fragment:
                raise ValueError(f"Redirect URI '{uri}' must not contain a fragment")
        return v

    @model_validator(mode="after")
    def check_jwks_exclusive(self) -> "ClientMetadata":
        if self.jwks_uri and self.jwks:
            raise ValueError("jwks_uri and jwks must not both be present")
        return self

    def uri_fields(self) -> Iterator[tuple[str, str]]:
        """
        Yields every URI-valued field as `(field_name, uri)`.

        Declared URI fields come first, then any extra field whose name ends in `_uri`/`_uris`.
        """
        for name in URI_LIST_FIELDS:
            for uri in getattr(self, name, None) or []:
                yield name, uri
        for name in URI_FIELDS:
            uri = getattr(self, name, None)
            if uri:
                yield name, uri
        for name, value in (self.model_extra or {}).items():
            if name in URI_FIELDS or name in URI_LIST_FIELDS:
                continue
            if name.endswith("_uri") and isinstance(value, str):
                yield name, value
            elif name.endswith("_uris") and isinstance(value, list):
                for uri in value:
                    if isinstance(uri, str):
                        yield name, uri

    def to_registration_request(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ClientInformation(ClientMetadata):
    """
    Client metadata as returned by the OP, including the issued credentials.

    This model is frozen (immutable); it is owned by the RP instance for its lifetime.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    client_id: str = Field(..., min_length=1)
    client_secret: SecretStr | None = None
    registration_access_token: SecretStr | None = None
    registration_client_uri: str | None = None
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None

    def __repr__(self) -> str:
        # Credentials MUST be redacted in __repr__
        return (
            f"ClientInformation(client_id={self.client_id!r}, "
            f"redirect_uris={self.redirect_uris!r}, "
            f"response_types={self.response_types!r}, "
            f"client_secret={self.client_secret!r})"
        )


class ClaimRequest(BaseModel):
    """A single entry of the `claims` request parameter."""

    model_config = ConfigDict(frozen=True)

    essential: bool | None = None
    value: Any | None = None
    values: list[Any] | None = None


class ClaimsRequest(BaseModel):
    """
    The `claims` request parameter: individual claims requested per target.

    A `None` entry requests the claim in the default manner.
    """

    model_config = ConfigDict(frozen=True)

    userinfo: dict[str, ClaimRequest | None] | None = None
    id_token: dict[str, ClaimRequest | None] | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for target in ("userinfo", "id_token"):
            entries = getattr(self, target)
            if entries is None:
                continue
            out[target] = {
                name: (req.model_dump(exclude_none=True) or None) if req is not None else None
                for name, req in entries.items()
            }
        return out

    def requested_names(self) -> set[str]:
        names: set[str] = set()
        for entries in (self.userinfo, self.id_token):
            names.update(entries or {})
        return names


class AuthorizationRequest(BaseModel):
    """
    An OpenID Connect Authentication Request.

    `state` and `nonce` are generated when not supplied. `request` and `request_uri`
    carry a Request Object and are mutually exclusive.
    """

    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    scope: list[str] = Field(default_factory=lambda: [Scope.OPENID.value])
    response_type: list[str] = Field(default_factory=lambda: [ResponseType.CODE.value])
    redirect_uri: str | None = None
    state: str = Field(default_factory=new_state)
    nonce: str | None = Field(default_factory=new_state)
    claims: ClaimsRequest | None = None
    prompt: list[str] | None = None
    login_hint: str | None = None
    max_age: int | None = None
    request: str | None = None
    request_uri: str | None = None

    @field_validator("scope", "response_type", "prompt", mode="before")
    @classmethod
    def split_space_delimited(cls, v: Any) -> Any:
        return _split_spaced(v)

    @property
    def flow(self) -> FlowKind:
        return flow_for(self.response_type)

    def verify(self) -> FlowKind:
        """
        Checks the request before it is transmitted.

        The `openid` scope check comes first and does not depend on any other field.

        Returns:
            FlowKind: The flow selected by `response_type`.

        Raises:
            MissingRequiredScopeError: If `openid` is not in `scope`.
            InvalidRequestError: For any other structural problem.
        """
        if Scope.OPENID.value not in self.scope:
            raise MissingRequiredScopeError("Missing required openid scope")
        if self.request and self.request_uri:
            raise InvalidRequestError("'request' and 'request_uri' must not be used together")
        if not self.client_id:
            raise InvalidRequestError("client_id is required")
        if not self.redirect_uri:
            raise InvalidRequestError("redirect_uri is required")
        if not self.state:
            raise InvalidRequestError("state is required")
        flow = flow_for(self.response_type)
        if flow is not FlowKind.CODE and not self.nonce:
            raise InvalidRequestError("nonce is required for implicit and hybrid flows")
        return flow

    def to_query(self) -> dict[str, str]:
        """Serialises the request as discrete query parameters."""
        params: dict[str, str] = {
            "scope": " ".join(self.scope),
            "response_type": " ".join(self.response_type),
            "state": self.state,
        }
        if self.client_id:
            params["client_id"] = self.client_id
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        if self.nonce:
            params["nonce"] = self.nonce
        if self.claims is not None:
            params["claims"] = json.dumps(self.claims.as_dict(), separators=(",", ":"))
        if self.prompt:
            params["prompt"] = " ".join(self.prompt)
        if self.login_hint:
            params["login_hint"] = self.login_hint
        if self.max_age is not None:
            params["max_age"] = str(self.max_age)
        if self.request:
            params["request"] = self.request
        if self.request_uri:
            params["request_uri"] = self.request_uri
        return params


class RequestObject(BaseModel):
    """
    A self-contained authorization request carried as a JWT (`request` / `request_uri`).
    """

    model_config = ConfigDict(frozen=True)

    iss: str
    aud: str
    client_id: str
    scope: str
    response_type: str
    redirect_uri: str
    state: str
    nonce: str | None = None
    claims: dict[str, Any] | None = None
    prompt: str | None = None
    login_hint: str | None = None
    max_age: int | None = None
    iat: int | None = None
    jti: str | None = None

    def to_claims(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Address(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    formatted: str | None = None
    street_address: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None


class StandardClaims(BaseModel):
    """Standard end-user claims shared by ID Tokens and UserInfo responses."""

    model_config = ConfigDict(frozen=True, extra="allow")

    sub: str
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    preferred_username: str | None = None
    email: str | None = None
    email_verified: bool | None = None
    phone_number: str | None = None
    phone_number_verified: bool | None = None
    address: Address | None = None

    def as_claims(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class IdToken(StandardClaims):
    """The validated payload of an ID Token."""

    iss: str
    aud: str | list[str]
    exp: int | float
    iat: int | float
    nonce: str | None = None
    auth_time: int | float | None = None
    azp: str | None = None
    acr: str | None = None
    at_hash: str | None = None
    c_hash: str | None = None
    sub_jwk: dict[str, Any] | None = None

    @property
    def audiences(self) -> list[str]:
        return [self.aud] if isinstance(self.aud, str) else list(self.aud)


class UserInfoResponse(StandardClaims):
    """Claims returned by the UserInfo endpoint."""


class AuthorizationResponse(BaseModel):
    """Common part of every authorization response. Consumed exactly once by the parser."""

    model_config = ConfigDict(frozen=True, extra="allow")

    flow: FlowKind
    state: str
    scope: list[str] | None = None

    @field_validator("scope", mode="before")
    @classmethod
    def split_scope(cls, v: Any) -> Any:
        return _split_spaced(v)


class CodeResponse(AuthorizationResponse):
    flow: Literal[FlowKind.CODE] = FlowKind.CODE
    code: str


class ImplicitResponse(AuthorizationResponse):
    flow: Literal[FlowKind.IMPLICIT] = FlowKind.IMPLICIT
    id_token: str
    id_token_claims: IdToken
    access_token: SecretStr | None = None
    token_type: str | None = None
    expires_in: int | None = None


class HybridResponse(AuthorizationResponse):
    flow: Literal[FlowKind.HYBRID] = FlowKind.HYBRID
    code: str
    id_token: str | None = None
    id_token_claims: IdToken | None = None
    access_token: SecretStr | None = None
    token_type: str | None = None
    expires_in: int | None = None


class ProviderMetadata(BaseModel):
    """
    OP configuration from .well-known/openid-configuration.
    Only the fields the engine uses are modelled; the rest is ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="The OP issuer URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    id_token_signing_alg_values_supported: list[str] | None = None
    request_object_signing_alg_values_supported: list[str] | None = None
    request_object_encryption_alg_values_supported: list[str] | None = None
    request_object_encryption_enc_values_supported: list[str] | None = None
    claims_parameter_supported: bool = False
    request_parameter_supported: bool = False
    request_uri_parameter_supported: bool = True


class JWKSet(BaseModel):
    """A JSON Web Key Set. Read-only once fetched."""

    model_config = ConfigDict(frozen=True)

    keys: list[dict[str, Any]]

    def as_dict(self) -> dict[str, Any]:
        return {"keys": [dict(k) for k in self.keys]}
