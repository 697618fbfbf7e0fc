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
OIDC Provider component for fetching and caching OP metadata and JWKS.
"""

from urllib.parse import urljoin

import anyio
import httpx
from pydantic import ValidationError

from coreason_oidc.exceptions import IssuerMismatchError, ProtocolError
from coreason_oidc.keys import parse_jwks
from coreason_oidc.models import JWKSet, ProviderMetadata
from coreason_oidc.transport import DEFAULT_MAX_BYTES, safe_json_fetch
from coreason_oidc.utils.logger import logger


class OIDCProvider:
    """
    Fetches and caches the OpenID Provider's configuration and JWKS.

    Both are fetched once and kept for the lifetime of the instance. `refresh()` is the only
    way to replace them; callers that already hold a snapshot keep validating against it.

    Attributes:
        issuer (str): The expected issuer identifier.
        discovery_url (str): The OIDC discovery URL.
    """

    def __init__(
        self,
        issuer: str,
        client: httpx.AsyncClient,
        max_response_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        """
        Initialize the OIDCProvider.

        Args:
            issuer: The OP issuer URL (e.g., https://op.example.com).
            client: The async HTTP client to use for requests.
            max_response_bytes: Upper bound for discovery and JWKS documents.
        """
        self.issuer = issuer.rstrip("/")
        self.discovery_url = urljoin(f"{self.issuer}/", ".well-known/openid-configuration")
        self.client = client
        self.max_response_bytes = max_response_bytes
        self._metadata: ProviderMetadata | None = None
        self._jwks: JWKSet | None = None
        self._lock: anyio.Lock | None = None

    def _get_lock(self) -> anyio.Lock:
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    async def fetch_provider_metadata(self) -> ProviderMetadata:
        """
        Fetches the provider configuration document. No caching, no retry.

        Returns:
            ProviderMetadata: The parsed configuration.

        Raises:
            TransportError: If the request fails.
            ProtocolError: If the document is invalid.
            IssuerMismatchError: If the document's issuer is not the configured one.
        """
        data = await safe_json_fetch(self.client, self.discovery_url, max_bytes=self.max_response_bytes)
        if not isinstance(data, dict):
            raise ProtocolError(f"Invalid OIDC configuration from {self.discovery_url}: not a JSON object")
        try:
            metadata = ProviderMetadata(**data)
        except ValidationError as e:
            raise ProtocolError(f"Invalid OIDC configuration from {self.discovery_url}: {e}") from e

        if metadata.issuer.rstrip("/") != self.issuer:
            logger.warning(f"Discovery issuer {metadata.issuer} does not match configured issuer {self.issuer}")
            raise IssuerMismatchError(f"Provider issuer '{metadata.issuer}' does not match '{self.issuer}'")
        return metadata

    async def fetch_keys(self, jwks_uri: str) -> JWKSet:
        """
        Fetches and parses the JWK Set at `jwks_uri`. No caching, no retry.

        Raises:
            TransportError: If the request fails.
            InvalidKeySetError: If the document is not a well-formed JWK Set.
        """
        data = await safe_json_fetch(self.client, jwks_uri, max_bytes=self.max_response_bytes)
        return parse_jwks(data)

    async def get_metadata(self) -> ProviderMetadata:
        """
        Returns the provider configuration, fetching it on first use.
        """
        if self._metadata is not None:
            return self._metadata

        async with self._get_lock():
            if self._metadata is None:
                self._metadata = await self.fetch_provider_metadata()
                logger.info(f"Loaded provider configuration for {self.issuer}")
            return self._metadata

    async def get_jwks(self) -> JWKSet:
        """
        Returns the provider's JWK Set, fetching it (and the configuration) on first use.
        """
        if self._jwks is not None:
            return self._jwks

        metadata = await self.get_metadata()
        async with self._get_lock():
            if self._jwks is None:
                self._jwks = await self.fetch_keys(metadata.jwks_uri)
                logger.info(f"Loaded {len(self._jwks.keys)} keys from {metadata.jwks_uri}")
            return self._jwks

    async def refresh(self) -> tuple[ProviderMetadata, JWKSet]:
        """
        Re-fetches configuration and keys and swaps both snapshots together.

        The cache is left untouched if either fetch fails.
        """
        async with self._get_lock():
            metadata = await self.fetch_provider_metadata()
            jwks = await self.fetch_keys(metadata.jwks_uri)
            self._metadata, self._jwks = metadata, jwks
            logger.info(f"Refreshed provider configuration and keys for {self.issuer}")
            return metadata, jwks
