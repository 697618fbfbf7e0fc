# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

from typing import Any

import anyio
import httpx
import pytest
from conftest import ISSUER, FakeOP, public_entry

from coreason_oidc.exceptions import InvalidKeySetError, IssuerMismatchError, ProtocolError, TransportError
from coreason_oidc.oidc_provider import OIDCProvider


@pytest.fixture
def provider(fake_op: FakeOP) -> OIDCProvider:
    return OIDCProvider(ISSUER + "/", fake_op.client())


def test_discovery_url(provider: OIDCProvider) -> None:
    assert provider.issuer == ISSUER
    assert provider.discovery_url == f"{ISSUER}/.well-known/openid-configuration"


@pytest.mark.asyncio
async def test_metadata_and_keys_are_cached(provider: OIDCProvider, fake_op: FakeOP) -> None:
    metadata = await provider.get_metadata()
    jwks = await provider.get_jwks()
    again = await provider.get_jwks()

    assert metadata.jwks_uri == f"{ISSUER}/jwks"
    assert jwks is again
    assert [k["kid"] for k in jwks.keys] == ["op-sig", "op-enc"]
    assert fake_op.count("/.well-known/openid-configuration") == 1
    assert fake_op.count("/jwks") == 1


@pytest.mark.asyncio
async def test_concurrent_first_use_fetches_once(provider: OIDCProvider, fake_op: FakeOP) -> None:
    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(provider.get_jwks)

    assert fake_op.count("/.well-known/openid-configuration") == 1
    assert fake_op.count("/jwks") == 1


@pytest.mark.asyncio
async def test_issuer_mismatch(provider: OIDCProvider, fake_op: FakeOP) -> None:
    fake_op.discovery["issuer"] = "https://evil.example.com"

    with pytest.raises(IssuerMismatchError):
        await provider.get_metadata()


@pytest.mark.asyncio
async def test_invalid_configuration(provider: OIDCProvider, fake_op: FakeOP) -> None:
    del fake_op.discovery["jwks_uri"]

    with pytest.raises(ProtocolError, match="Invalid OIDC configuration"):
        await provider.get_metadata()


@pytest.mark.asyncio
async def test_refresh_swaps_snapshots(provider: OIDCProvider, fake_op: FakeOP, other_key: Any) -> None:
    old = await provider.get_jwks()
    fake_op.jwks = {"keys": [public_entry(other_key, "rotated", "sig")]}

    metadata, jwks = await provider.refresh()

    assert [k["kid"] for k in jwks.keys] == ["rotated"]
    assert await provider.get_jwks() is jwks
    assert await provider.get_metadata() is metadata
    # Earlier snapshot is untouched
    assert [k["kid"] for k in old.keys] == ["op-sig", "op-enc"]


@pytest.mark.asyncio
async def test_failed_refresh_keeps_cache(provider: OIDCProvider, fake_op: FakeOP) -> None:
    cached = await provider.get_jwks()
    fake_op.jwks = {"keys": "broken"}

    with pytest.raises(InvalidKeySetError):
        await provider.refresh()
    assert await provider.get_jwks() is cached


@pytest.mark.asyncio
async def test_server_error_is_not_retried() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    provider = OIDCProvider(ISSUER, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(TransportError):
        await provider.get_metadata()
    assert len(calls) == 1
