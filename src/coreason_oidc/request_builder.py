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
RequestBuilder component for building and transmitting authorization requests.
"""

import secrets
import threading
import time
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, model_validator

from coreason_oidc.exceptions import InvalidRequestError
from coreason_oidc.jose import UNSIGNED, JoseProcessor
from coreason_oidc.models import AuthorizationRequest, FlowKind, RequestObject
from coreason_oidc.utils.logger import logger
from coreason_oidc.utils.uris import append_query, require_https


class RequestMode(StrEnum):
    PARAMETERS = "parameters"
    REQUEST = "request"
    REQUEST_URI = "request_uri"


class RequestObjectProtection(BaseModel):
    """
    How a Request Object is protected: a JWS algorithm (or `none`) and an optional JWE layer.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    signing_alg: str = UNSIGNED
    signing_key: Any = None
    encryption_alg: str | None = None
    encryption_enc: str | None = None
    encryption_key: Any = None

    @model_validator(mode="after")
    def check_keys(self) -> "RequestObjectProtection":
        if self.signing_alg != UNSIGNED and self.signing_key is None:
            raise ValueError(f"signing_key is required for {self.signing_alg}")
        if (self.encryption_alg is None) != (self.encryption_enc is None):
            raise ValueError("encryption_alg and encryption_enc must be given together")
        return self

    def with_encryption_key(self, key: Any) -> "RequestObjectProtection":
        return self.model_copy(update={"encryption_key": key})


class AuthorizationDispatch(BaseModel):
    """The outcome of `dispatch`: where to send the user agent, and what to expect back."""

    model_config = ConfigDict(frozen=True)

    url: str
    mode: RequestMode
    flow: FlowKind
    state: str
    nonce: str | None = None
    request_object: str | None = None
    request_uri: str | None = None


class RequestObjectHost(Protocol):
    """
    Publishes Request Objects at a URI the OP dereferences (`request_uri` mode).

    `withdraw` is called once the authorization response is in or the wait has failed.
    """

    async def publish(self, uri: str, token: str) -> None: ...

    async def withdraw(self, uri: str) -> None: ...


class InMemoryRequestObjectHost:
    """
    Keeps published Request Objects in memory.

    An HTTPS listener (or a test double standing in for the OP) calls `resolve(uri)` to serve them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, str] = {}

    async def publish(self, uri: str, token: str) -> None:
        with self._lock:
            self._objects[uri] = token

    def resolve(self, uri: str) -> str | None:
        with self._lock:
            return self._objects.get(uri)

    async def withdraw(self, uri: str) -> None:
        with self._lock:
            self._objects.pop(uri, None)


class RequestBuilder:
    """
    Builds authorization requests and Request Objects and chooses how they are transmitted.

    Attributes:
        jose (JoseProcessor): Signs and encrypts Request Objects.
        unsafe_local_dev (bool): Accept an http `request_uri`.
    """

    def __init__(self, jose: JoseProcessor, unsafe_local_dev: bool = False) -> None:
        self.jose = jose
        self.unsafe_local_dev = unsafe_local_dev

    def validate(self, request: AuthorizationRequest) -> FlowKind:
        """
        Validates the request before transmission.

        Raises:
            MissingRequiredScopeError: If `openid` is not requested.
            InvalidRequestError: For any other structural problem.
        """
        return request.verify()

    def build_request_object(self, request: AuthorizationRequest, issuer: str) -> RequestObject:
        """
        Copies the request parameters into a Request Object addressed to `issuer`.

        Args:
            request: A request that passes `validate`.
            issuer: The OP issuer, used as `aud`.

        Returns:
            RequestObject: With `iss` set to the client id and `aud` to the issuer.
        """
        self.validate(request)
        if request.client_id is None or request.redirect_uri is None:
            raise InvalidRequestError("A Request Object needs client_id and redirect_uri")
        return RequestObject(
            iss=request.client_id,
            aud=issuer,
            client_id=request.client_id,
            scope=" ".join(request.scope),
            response_type=" ".join(request.response_type),
            redirect_uri=request.redirect_uri,
            state=request.state,
            nonce=request.nonce,
            claims=request.claims.as_dict() if request.claims is not None else None,
            prompt=" ".join(request.prompt) if request.prompt else None,
            login_hint=request.login_hint,
            max_age=request.max_age,
            iat=int(time.time()),
            jti=secrets.token_urlsafe(16),
        )

    def protect(self, request_object: RequestObject, protection: RequestObjectProtection) -> str:
        """
        Serialises the Request Object: signed (or unsecured), then encrypted when configured.
        """
        token = self.jose.sign(request_object.to_claims(), protection.signing_key, protection.signing_alg)
        if protection.encryption_alg is not None and protection.encryption_enc is not None:
            if protection.encryption_key is None:
                raise InvalidRequestError("Request Object encryption requested without an encryption key")
            token = self.jose.encrypt(
                token, protection.encryption_key, protection.encryption_alg, protection.encryption_enc
            )
        return token

    async def dispatch(
        self,
        endpoint: str,
        request: AuthorizationRequest,
        issuer: str,
        mode: RequestMode = RequestMode.PARAMETERS,
        protection: RequestObjectProtection | None = None,
        request_uri: str | None = None,
        host: RequestObjectHost | None = None,
    ) -> AuthorizationDispatch:
        """
        Builds the authorization URL for `mode`.

        In `request_uri` mode the Request Object is published on `host` before this method returns,
        so it is retrievable by the time the user agent reaches the OP.

        Args:
            endpoint: The OP authorization endpoint.
            request: The authorization request.
            issuer: The OP issuer (Request Object audience).
            mode: Discrete parameters, inline `request`, or `request_uri`.
            protection: Request Object protection; unsecured when omitted.
            request_uri: Where the Request Object is hosted (`request_uri` mode).
            host: The hosting collaborator (`request_uri` mode).

        Returns:
            AuthorizationDispatch: The URL plus the state/nonce to validate the response against.
        """
        if request.request or request.request_uri:
            raise InvalidRequestError("Pass the transmission mode instead of pre-filling 'request'/'request_uri'")
        flow = self.validate(request)
        mode = RequestMode(mode)

        request_object: str | None = None
        if mode is RequestMode.PARAMETERS:
            params = request.to_query()
        else:
            request_object = self.protect(
                self.build_request_object(request, issuer), protection or RequestObjectProtection()
            )
            # Required parameters are repeated outside the object so the request stays valid OAuth 2.0
            params = request.model_copy(update={"claims": None}).to_query()
            if mode is RequestMode.REQUEST:
                params["request"] = request_object
            else:
                if request_uri is None or host is None:
                    raise InvalidRequestError("request_uri mode needs both a request_uri and a host")
                if not self.unsafe_local_dev:
                    require_https(request_uri, "request_uri")
                await host.publish(request_uri, request_object)
                params["request_uri"] = request_uri

        url = append_query(endpoint, params)
        logger.info(f"Prepared {flow} authorization request ({mode})")
        return AuthorizationDispatch(
            url=url,
            mode=mode,
            flow=flow,
            state=request.state,
            nonce=request.nonce,
            request_object=request_object,
            request_uri=request_uri if mode is RequestMode.REQUEST_URI else None,
        )
