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
Parsing and validation of authorization responses for the code, implicit and hybrid flows.
"""

import hmac
from collections.abc import Mapping
from typing import Any, ClassVar
from urllib.parse import parse_qsl, urlparse

from pydantic import ValidationError

from coreason_oidc.exceptions import AuthorizationResponseError, MalformedResponseError, StateMismatchError
from coreason_oidc.models import (
    AuthorizationRequest,
    AuthorizationResponse,
    CodeResponse,
    FlowKind,
    HybridResponse,
    ImplicitResponse,
    JWKSet,
)
from coreason_oidc.utils.logger import logger
from coreason_oidc.validator import IdTokenValidator


def _params(text: str) -> dict[str, str]:
    return dict(parse_qsl(text, keep_blank_values=True))


def parse_callback(payload: str | Mapping[str, Any], flow: FlowKind) -> dict[str, str]:
    """
    Extracts the response parameters from an inbound redirect.

    The code flow returns its parameters in the query; implicit and hybrid in the fragment.
    The other component is used when the expected one is empty (error responses may use either).

    Args:
        payload: The full redirect URL, a raw query/fragment string, or a parameter mapping.
        flow: The flow the request was made for.

    Returns:
        dict[str, str]: The response parameters.

    Raises:
        AuthorizationResponseError: If the OP returned an `error`.
    """
    if isinstance(payload, Mapping):
        params = {str(k): str(v) for k, v in payload.items() if v is not None}
    else:
        text = payload.strip()
        if text.startswith("#"):
            query, fragment = "", text[1:]
        elif text.startswith("?"):
            query, fragment = text[1:], ""
        elif "?" in text or "#" in text or urlparse(text).scheme:
            parsed = urlparse(text)
            query, fragment = parsed.query, parsed.fragment
        else:
            # Bare parameter string
            query = fragment = text

        first, second = (query, fragment) if flow is FlowKind.CODE else (fragment, query)
        params = _params(first) or _params(second)

    if "error" in params:
        logger.warning(f"OP returned authorization error: {params['error']}")
        raise AuthorizationResponseError(params["error"], params.get("error_description"))
    return params


class FlowResponseParser:
    """Base class: one parser per flow, each checking its mandatory fields before anything else."""

    flow: ClassVar[FlowKind]
    required: ClassVar[tuple[str, ...]]

    def __init__(self, validator: IdTokenValidator | None) -> None:
        self.validator = validator

    def check_required(self, params: Mapping[str, str]) -> None:
        missing = [name for name in self.required if not params.get(name)]
        if missing:
            raise MalformedResponseError(f"{self.flow} response is missing {', '.join(missing)}")

    @staticmethod
    def check_state(params: Mapping[str, str], request: AuthorizationRequest) -> None:
        if not hmac.compare_digest(params["state"].encode("utf-8"), request.state.encode("utf-8")):
            raise StateMismatchError("Response state does not match the request state")

    def require_validator(self) -> IdTokenValidator:
        if self.validator is None:
            raise MalformedResponseError(f"{self.flow} responses carry an ID Token but no validator is configured")
        return self.validator

    def parse(
        self,
        params: Mapping[str, str],
        request: AuthorizationRequest,
        keys: JWKSet | None,
        self_issued: bool,
    ) -> AuthorizationResponse:
        raise NotImplementedError


class CodeResponseParser(FlowResponseParser):
    flow = FlowKind.CODE
    required = ("code", "state")

    def parse(
        self,
        params: Mapping[str, str],
        request: AuthorizationRequest,
        keys: JWKSet | None,
        self_issued: bool,
    ) -> CodeResponse:
        self.check_required(params)
        self.check_state(params, request)
        return CodeResponse(**params)


class ImplicitResponseParser(FlowResponseParser):
    flow = FlowKind.IMPLICIT
    required = ("id_token", "state")

    def parse(
        self,
        params: Mapping[str, str],
        request: AuthorizationRequest,
        keys: JWKSet | None,
        self_issued: bool,
    ) -> ImplicitResponse:
        self.check_required(params)
        if "token" in request.response_type and not params.get("access_token"):
            raise MalformedResponseError("implicit response is missing access_token")
        self.check_state(params, request)

        claims = self.require_validator().validate(
            params["id_token"],
            request.nonce,
            keys=keys,
            access_token=params.get("access_token"),
            self_issued=self_issued,
        )
        return ImplicitResponse(**params, id_token_claims=claims)


class HybridResponseParser(FlowResponseParser):
    flow = FlowKind.HYBRID
    required = ("code", "state")

    def parse(
        self,
        params: Mapping[str, str],
        request: AuthorizationRequest,
        keys: JWKSet | None,
        self_issued: bool,
    ) -> HybridResponse:
        self.check_required(params)
        for name, field in (("id_token", "id_token"), ("token", "access_token")):
            if name in request.response_type and not params.get(field):
                raise MalformedResponseError(f"hybrid response is missing {field}")
        self.check_state(params, request)

        claims = None
        if params.get("id_token"):
            # The code goes to the token endpoint separately; only the front-channel ID Token is checked here
            claims = self.require_validator().validate(
                params["id_token"],
                request.nonce,
                keys=keys,
                access_token=params.get("access_token"),
                code=params["code"],
                self_issued=self_issued,
            )
        return HybridResponse(**params, id_token_claims=claims)


# Model fields that never come from the wire
_RESERVED = frozenset({"flow", "id_token_claims"})

PARSERS: dict[FlowKind, type[FlowResponseParser]] = {
    FlowKind.CODE: CodeResponseParser,
    FlowKind.IMPLICIT: ImplicitResponseParser,
    FlowKind.HYBRID: HybridResponseParser,
}


class ResponseParser:
    """
    Parses the response to an authorization request and validates it against that request.

    The parser is chosen from the request's `response_type`; responses are single-use and
    nothing is retried.
    """

    def __init__(self, validator: IdTokenValidator | None = None) -> None:
        self.validator = validator

    def parse(
        self,
        payload: str | Mapping[str, Any],
        request: AuthorizationRequest,
        keys: JWKSet | None = None,
        self_issued: bool = False,
    ) -> CodeResponse | ImplicitResponse | HybridResponse:
        """
        Parses and validates an inbound authorization response.

        Args:
            payload: The redirect URL, query/fragment string or parameter mapping.
            request: The request this response answers (supplies state and nonce).
            keys: The OP's key set snapshot used for ID Token signatures.
            self_issued: Validate the ID Token as self-issued.

        Raises:
            AuthorizationResponseError: If the OP returned an error.
            MalformedResponseError: If mandatory fields are missing.
            StateMismatchError: If `state` does not match.
            ProtocolError, CryptographicError: From ID Token validation.
        """
        flow = request.flow
        params = {k: v for k, v in parse_callback(payload, flow).items() if k not in _RESERVED}
        parser = PARSERS[flow](self.validator)
        try:
            response = parser.parse(params, request, keys, self_issued)
        except ValidationError as e:
            raise MalformedResponseError(f"Invalid {flow} response: {e}") from e
        logger.info(f"Validated {flow} authorization response")
        return response  # type: ignore[return-value]
