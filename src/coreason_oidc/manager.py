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
RelyingParty component for orchestrating registration, authentication and claim resolution.
"""

from collections.abc import Callable, Iterable, Mapping
from contextlib import AbstractContextManager
from functools import partial
from typing import Any

import anyio
import httpx
from anyio.from_thread import BlockingPortal, start_blocking_portal
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import SecretStr

from coreason_oidc.callback import CallbackPayload, CallbackRegistry, UserAgent
from coreason_oidc.config import RelyingPartyConfig
from coreason_oidc.exceptions import CoreasonOIDCError, ProtocolError
from coreason_oidc.jose import DEFAULT_SIGNING_ALGORITHMS, JoseProcessor
from coreason_oidc.keys import ENC, PEMSource, kty_for_alg, publish_keys, select_key
from coreason_oidc.models import (
    AuthorizationRequest,
    ClientInformation,
    ClientMetadata,
    CodeResponse,
    FlowKind,
    HybridResponse,
    IdToken,
    ImplicitResponse,
    JWKSet,
    ProviderMetadata,
    UserInfoResponse,
)
from coreason_oidc.oidc_provider import OIDCProvider
from coreason_oidc.registration import ClientRegistration, check_metadata_https
from coreason_oidc.request_builder import (
    InMemoryRequestObjectHost,
    RequestBuilder,
    RequestMode,
    RequestObjectHost,
    RequestObjectProtection,
)
from coreason_oidc.response_parser import ResponseParser
from coreason_oidc.self_issued import SelfIssuedAdapter, SelfIssuedPeer
from coreason_oidc.transport import SafeAsyncTransport
from coreason_oidc.userinfo import ClaimsAggregator, UserInfoClient
from coreason_oidc.utils.logger import logger
from coreason_oidc.validator import IdTokenValidator

AuthenticationResponse = CodeResponse | ImplicitResponse | HybridResponse

SELF_ISSUED_ENDPOINT = "openid://"


class RelyingPartyAsync:
    """
    Async implementation of the Relying Party (The Core).
    Handles resources via async context manager.
    """

    def __init__(
        self,
        config: RelyingPartyConfig,
        client: httpx.AsyncClient | None = None,
        client_information: ClientInformation | None = None,
        user_agent: UserAgent | None = None,
        callbacks: CallbackRegistry | None = None,
        request_host: RequestObjectHost | None = None,
        decryption_key: Any = None,
        keepalive: bool = True,
    ) -> None:
        """
        Initialize the RelyingPartyAsync.

        Args:
            config: The configuration object.
            client: External async client (optional). If not provided, a `SafeAsyncTransport` client is created.
            client_information: An already registered client. Set by `register_client` otherwise.
            user_agent: Follows the authorization redirect in `authenticate`.
            callbacks: Receives the redirect back from the OP. A fresh registry is created if omitted.
            request_host: Hosts Request Objects for `request_uri` mode.
            decryption_key: The RP's private key for encrypted ID Tokens and UserInfo responses.
            keepalive: Keep idle connections of the internal client open for reuse. Ignored for an external client.
        """
        self.config = config
        self._internal_client = client is None

        if client:
            self._client = client
        else:
            limits = httpx.Limits() if keepalive else httpx.Limits(max_keepalive_connections=0)
            # SafeAsyncTransport pins DNS and blocks private addresses; local dev talks to localhost
            transport = (
                httpx.AsyncHTTPTransport(limits=limits)
                if config.unsafe_local_dev
                else SafeAsyncTransport(limits=limits)
            )
            self._client = httpx.AsyncClient(transport=transport, timeout=config.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

        self.client_information = client_information
        self.user_agent = user_agent
        self.callbacks = callbacks or CallbackRegistry()
        self.request_host = request_host or InMemoryRequestObjectHost()
        self.decryption_key = decryption_key

        self.jose = JoseProcessor(
            signing_algorithms=sorted(set(DEFAULT_SIGNING_ALGORITHMS) | set(config.allowed_algorithms)),
            encryption_algorithms=config.encryption_algorithms,
            encryption_encodings=config.encryption_encodings,
        )
        self.oidc_provider = OIDCProvider(config.issuer, self._client, config.max_response_bytes)
        self.registration = ClientRegistration(self._client, config.max_response_bytes)
        self.request_builder = RequestBuilder(self.jose, unsafe_local_dev=config.unsafe_local_dev)
        self.userinfo = UserInfoClient(
            self._client, self.jose, config.allowed_algorithms, config.max_response_bytes
        )
        self.claims_aggregator = ClaimsAggregator(self.userinfo, config.pii_salt)
        self.self_issued = SelfIssuedAdapter(self.jose, config.pii_salt, leeway=config.clock_skew_leeway)

    async def __aenter__(self) -> "RelyingPartyAsync":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def fetch_provider_metadata(self) -> ProviderMetadata:
        """Returns the OP configuration (fetched once, then cached)."""
        return await self.oidc_provider.get_metadata()

    async def fetch_keys(self, jwks_uri: str | None = None) -> JWKSet:
        """
        Returns the OP's key set.

        Args:
            jwks_uri: Fetch this key set directly (uncached) instead of the discovered one.
        """
        if jwks_uri is not None:
            return await self.oidc_provider.fetch_keys(jwks_uri)
        return await self.oidc_provider.get_jwks()

    async def refresh_provider(self) -> tuple[ProviderMetadata, JWKSet]:
        """Re-fetches OP configuration and keys. In-flight validations keep their snapshot."""
        return await self.oidc_provider.refresh()

    @staticmethod
    def publish_keys(sign_cert: PEMSource, enc_cert: PEMSource) -> dict[str, Any]:
        """The RP's own JWK Set, for `jwks_uri` hosting."""
        return publish_keys(sign_cert, enc_cert)

    async def register_client(
        self,
        metadata: ClientMetadata,
        endpoint: str | None = None,
        initial_access_token: str | None = None,
    ) -> ClientInformation:
        """
        Registers the RP with the OP and keeps the resulting client information.

        Args:
            metadata: The client metadata.
            endpoint: The registration endpoint. Defaults to the discovered one.
            initial_access_token: Bearer token for protected registration endpoints.

        Raises:
            SchemeViolationError: If any metadata URI is not https (nothing is sent).
            RegistrationError, FieldMismatchError: If the OP's answer is not acceptable.
        """
        if endpoint is None:
            # Fail on http metadata before the discovery fetch too
            check_metadata_https(metadata)
            endpoint = (await self.fetch_provider_metadata()).registration_endpoint
            if not endpoint:
                raise ProtocolError("The OP does not advertise a registration_endpoint")

        self.client_information = await self.registration.register(endpoint, metadata, initial_access_token)
        return self.client_information

    def _complete(self, request: AuthorizationRequest) -> AuthorizationRequest:
        """Fills `client_id` and `redirect_uri` from the registered client when the request omits them."""
        if self.client_information is None:
            return request
        update: dict[str, Any] = {}
        if not request.client_id:
            update["client_id"] = self.client_information.client_id
        if not request.redirect_uri:
            update["redirect_uri"] = self.client_information.redirect_uris[0]
        return request.model_copy(update=update) if update else request

    def _validator(self, client_id: str | None) -> IdTokenValidator:
        if not client_id:
            raise CoreasonOIDCError("A client_id is required to validate ID Tokens")
        return IdTokenValidator(
            self.jose,
            client_id=client_id,
            issuer=self.config.issuer,
            pii_salt=self.config.pii_salt,
            allowed_algorithms=self.config.allowed_algorithms,
            leeway=self.config.clock_skew_leeway,
            decryption_key=self.decryption_key,
        )

    async def _protection_with_op_key(self, protection: RequestObjectProtection) -> RequestObjectProtection:
        if protection.encryption_alg is None or protection.encryption_key is not None:
            return protection
        keys = await self.fetch_keys()
        key = select_key(keys, ENC, kty_for_alg(protection.encryption_alg))
        return protection.with_encryption_key(key)

    async def authenticate(
        self,
        request: AuthorizationRequest,
        mode: RequestMode = RequestMode.PARAMETERS,
        protection: RequestObjectProtection | None = None,
        request_uri: str | None = None,
        timeout: float | None = None,
    ) -> AuthenticationResponse:
        """
        Runs a redirect-based authentication and returns the validated response.

        The user agent is sent to the OP; the response arrives through `deliver_callback` on any
        thread. The wait is bounded by `timeout` (default `callback_timeout`); a response that
        arrives later is discarded.

        Args:
            request: The authorization request. `client_id`/`redirect_uri` default to the registered client.
            mode: Discrete parameters, inline `request`, or `request_uri`.
            protection: Request Object signing/encryption. A missing encryption key is taken from the
                OP's `use=enc` key.
            request_uri: Where the Request Object is hosted (`request_uri` mode).
            timeout: Seconds to wait for the response.

        Returns:
            The validated code, implicit or hybrid response.

        Raises:
            MissingRequiredScopeError, InvalidRequestError: If the request is invalid (nothing is sent).
            CallbackTimeoutError: If no response arrives in time.
            ProtocolError, CryptographicError: If the response fails validation.
        """
        if self.user_agent is None:
            raise CoreasonOIDCError("authenticate requires a user agent to follow the redirect")

        request = self._complete(request)
        self.request_builder.validate(request)

        metadata = await self.fetch_provider_metadata()
        if not metadata.authorization_endpoint:
            raise ProtocolError("The OP does not advertise an authorization_endpoint")
        if protection is not None:
            protection = await self._protection_with_op_key(protection)

        dispatch = await self.request_builder.dispatch(
            metadata.authorization_endpoint,
            request,
            metadata.issuer,
            mode=mode,
            protection=protection,
            request_uri=request_uri,
            host=self.request_host,
        )

        signal = self.callbacks.expect(dispatch.state)
        try:
            await self.user_agent.navigate(dispatch.url)
            logger.debug(f"User agent redirected, waiting for the {dispatch.flow} response")
            payload = await signal.wait(timeout if timeout is not None else self.config.callback_timeout)
        finally:
            self.callbacks.discard(dispatch.state)
            if dispatch.request_uri is not None:
                with anyio.CancelScope(shield=True):
                    await self.request_host.withdraw(dispatch.request_uri)

        return await self.parse_authorization_response(payload, request)

    def deliver_callback(self, payload: CallbackPayload) -> bool:
        """Inbound delivery channel: hands a redirect back from the OP to the waiting `authenticate`."""
        return self.callbacks.deliver(payload)

    async def parse_authorization_response(
        self,
        payload: str | Mapping[str, Any],
        request: AuthorizationRequest,
        keys: JWKSet | None = None,
    ) -> AuthenticationResponse:
        """
        Parses and validates an authorization response against its request.

        The OP key set is read once; validation completes against that snapshot.
        """
        request = self._complete(request)
        if keys is None and request.flow is not FlowKind.CODE:
            keys = await self.fetch_keys()
        parser = ResponseParser(self._validator(request.client_id))
        return parser.parse(payload, request, keys=keys)

    async def authenticate_self_issued(
        self,
        request: AuthorizationRequest,
        identity: SelfIssuedPeer,
        endpoint: str = SELF_ISSUED_ENDPOINT,
    ) -> ImplicitResponse:
        """
        Authenticates against a self-issued OP.

        `client_id` defaults to the RP's first redirect URI, as self-issued OPs have no registration.
        """
        if self.client_information is not None and not request.client_id:
            request = request.model_copy(update={"client_id": self.client_information.redirect_uris[0]})
        request = self._complete(request)
        return await self.self_issued.authenticate(endpoint, request, identity)

    async def get_user_info(
        self,
        id_token: IdToken,
        access_token: str | SecretStr | None = None,
        requested_claims: Iterable[str] = (),
    ) -> UserInfoResponse:
        """
        Resolves the end-user's claims from the ID Token and, given an access token, UserInfo.

        Raises:
            MissingClaimError: If a requested claim is in neither source.
        """
        endpoint: str | None = None
        keys: JWKSet | None = None
        if access_token is not None:
            endpoint = (await self.fetch_provider_metadata()).userinfo_endpoint
            keys = await self.fetch_keys()
        return await self.claims_aggregator.resolve(
            requested_claims,
            id_token,
            access_token=access_token,
            endpoint=endpoint,
            keys=keys,
            decryption_key=self.decryption_key,
        )


class RelyingParty:
    """
    Sync Facade for RelyingPartyAsync.

    Inside a `with` block every call runs on one background event loop (an anyio blocking portal).
    Outside a `with` block each call runs its own loop through `anyio.run`, so the internal HTTP
    client keeps no idle connections by default: a pooled connection belongs to the loop that
    opened it. An external client used outside `with` must not pool connections either.
    """

    def __init__(self, config: RelyingPartyConfig, **kwargs: Any) -> None:
        kwargs.setdefault("keepalive", False)
        self._async = RelyingPartyAsync(config, **kwargs)
        self._portal_cm: AbstractContextManager[BlockingPortal] | None = None
        self._portal: BlockingPortal | None = None

    def __enter__(self) -> "RelyingParty":
        self._portal_cm = start_blocking_portal()
        self._portal = self._portal_cm.__enter__()
        self._portal.call(self._async.__aenter__)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._portal is None or self._portal_cm is None:
            return
        try:
            self._portal.call(self._async.__aexit__, exc_type, exc_val, exc_tb)
        finally:
            self._portal_cm.__exit__(exc_type, exc_val, exc_tb)
            self._portal = self._portal_cm = None

    def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        call = partial(func, *args, **kwargs)
        if self._portal is not None:
            return self._portal.call(call)
        return anyio.run(call)

    def register_client(self, metadata: ClientMetadata, **kwargs: Any) -> ClientInformation:
        result: ClientInformation = self._run(self._async.register_client, metadata, **kwargs)
        return result

    def fetch_provider_metadata(self) -> ProviderMetadata:
        result: ProviderMetadata = self._run(self._async.fetch_provider_metadata)
        return result

    def fetch_keys(self, jwks_uri: str | None = None) -> JWKSet:
        result: JWKSet = self._run(self._async.fetch_keys, jwks_uri)
        return result

    def refresh_provider(self) -> tuple[ProviderMetadata, JWKSet]:
        result: tuple[ProviderMetadata, JWKSet] = self._run(self._async.refresh_provider)
        return result

    def publish_keys(self, sign_cert: PEMSource, enc_cert: PEMSource) -> dict[str, Any]:
        return self._async.publish_keys(sign_cert, enc_cert)

    def authenticate(self, request: AuthorizationRequest, **kwargs: Any) -> AuthenticationResponse:
        result: AuthenticationResponse = self._run(self._async.authenticate, request, **kwargs)
        return result

    def deliver_callback(self, payload: CallbackPayload) -> bool:
        return self._async.deliver_callback(payload)

    def parse_authorization_response(
        self, payload: str | Mapping[str, Any], request: AuthorizationRequest, **kwargs: Any
    ) -> AuthenticationResponse:
        result: AuthenticationResponse = self._run(
            self._async.parse_authorization_response, payload, request, **kwargs
        )
        return result

    def authenticate_self_issued(
        self, request: AuthorizationRequest, identity: SelfIssuedPeer, **kwargs: Any
    ) -> ImplicitResponse:
        result: ImplicitResponse = self._run(self._async.authenticate_self_issued, request, identity, **kwargs)
        return result

    def get_user_info(self, id_token: IdToken, **kwargs: Any) -> UserInfoResponse:
        result: UserInfoResponse = self._run(self._async.get_user_info, id_token, **kwargs)
        return result
