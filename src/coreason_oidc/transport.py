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
HTTP helpers: an SSRF-safe transport with DNS pinning and size-bounded response reading.
"""

import ipaddress
import json
import socket
from typing import Any

import anyio
import httpx

from coreason_oidc.exceptions import OversizedResponseError, SecurityError, TransportError
from coreason_oidc.utils.logger import logger

DEFAULT_MAX_BYTES = 1_000_000


class SafeAsyncTransport(httpx.AsyncHTTPTransport):
    """
    Transport used for every call to the OP, registration and UserInfo endpoints; pins DNS against SSRF.

    The hostname is resolved once, every resolved address is checked against blocked ranges
    (private, loopback, link-local, reserved, multicast), and the connection is forced to the
    first safe address while the original Host header and SNI are kept for TLS verification.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        try:
            ip_obj = ipaddress.ip_address(hostname)
        except ValueError:
            ip_obj = None

        if ip_obj is not None:
            self._validate_ip(ip_obj, hostname)
            return await super().handle_async_request(request)

        try:
            addr_infos = await anyio.to_thread.run_sync(socket.getaddrinfo, hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {hostname}: {e}")
            raise SecurityError(f"DNS resolution failed for {hostname}") from e

        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            try:
                candidate = ipaddress.ip_address(sockaddr[0])
                self._validate_ip(candidate, hostname)
            except (SecurityError, ValueError):
                continue
            target_ip = str(candidate)
            break

        if not target_ip:
            logger.error(f"Security violation: No valid public IP found for {hostname}")
            raise SecurityError(f"SSRF Protection: Blocked {hostname}, no public address")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS Pinned: {hostname} -> {target_ip}")
        return await super().handle_async_request(request)

    def _validate_ip(self, ip_obj: Any, hostname: str) -> None:
        if ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_link_local or ip_obj.is_reserved or ip_obj.is_multicast:
            logger.warning(f"Security violation: Blocked access to {hostname} ({ip_obj})")
            raise SecurityError(f"SSRF Protection: Blocked {hostname} ({ip_obj})")


async def safe_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    max_bytes: int = DEFAULT_MAX_BYTES,
    **kwargs: Any,
) -> tuple[httpx.Response, bytes]:
    """
    Streams a response, refusing bodies larger than `max_bytes`.

    The status is not checked here so callers can read OAuth error bodies on 4xx.

    Returns:
        tuple[httpx.Response, bytes]: The (closed) response and its body.

    Raises:
        OversizedResponseError: If the declared or actual size exceeds `max_bytes`.
        httpx.HTTPError: On network failure.
    """
    async with client.stream(method, url, **kwargs) as response:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise OversizedResponseError(f"Response size exceeds limit: {content_length} > {max_bytes}")

        content = bytearray()
        async for chunk in response.aiter_bytes():
            content.extend(chunk)
            if len(content) > max_bytes:
                raise OversizedResponseError(f"Response size exceeds limit of {max_bytes} bytes")

    return response, bytes(content)


def decode_json(content: bytes, url: str) -> Any:
    try:
        return json.loads(content)
    except ValueError as e:
        raise TransportError(f"Invalid JSON response from {url}") from e


async def safe_json_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    max_bytes: int = DEFAULT_MAX_BYTES,
    **kwargs: Any,
) -> Any:
    """
    Fetches a JSON document with a size bound; non-2xx statuses raise.

    Raises:
        TransportError: On network failure, a non-2xx status or an invalid JSON body.
        OversizedResponseError: If the body is too large.
    """
    try:
        response, content = await safe_fetch(client, url, method=method, max_bytes=max_bytes, **kwargs)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"{method} {url} failed: {e}")
        raise TransportError(f"{method} {url} failed: {e}") from e
    return decode_json(content, url)
