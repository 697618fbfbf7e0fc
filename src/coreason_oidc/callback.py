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
Synchronization between the redirect-based flows and the inbound callback channel.

`authenticate` sends the user agent to the OP and returns control before the authorization
response exists. The response arrives on another execution context (an HTTPS listener thread,
another event loop, a test double) which hands it to a `CallbackRegistry`; the waiting caller
blocks on the `CallbackSignal` registered for its `state`.
"""

import threading
from collections.abc import Mapping
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlparse

import anyio
import anyio.to_thread

from coreason_oidc.exceptions import CallbackTimeoutError
from coreason_oidc.utils.logger import logger

CallbackPayload = str | Mapping[str, Any]


class UserAgent(Protocol):
    """The user agent that follows the authorization redirect (a browser launcher or a test double)."""

    async def navigate(self, url: str) -> None: ...


class CallbackSignal:
    """
    Single-use completion signal carrying one authorization response.

    Resolved at most once, from any thread. Once resolved, cancelled or timed out the signal is
    closed and further deliveries are rejected instead of overwriting the payload.
    """

    def __init__(self, state: str | None = None) -> None:
        self.state = state
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._closed = False
        self._payload: CallbackPayload | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def resolve(self, payload: CallbackPayload) -> bool:
        """
        Hands the response to the waiter.

        Returns:
            bool: True if this call completed the signal, False if it was already closed.
        """
        with self._lock:
            if self._closed:
                return False
            self._payload = payload
            self._closed = True
        self._event.set()
        return True

    def cancel(self) -> bool:
        """Closes the signal without a payload. Returns False if it was already closed."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        self._event.set()
        return True

    def _result(self) -> CallbackPayload:
        with self._lock:
            if self._payload is None:
                raise CallbackTimeoutError(f"No authorization response received for state {self.state!r}")
            return self._payload

    def wait_blocking(self, timeout: float | None = None) -> CallbackPayload:
        """
        Blocks the calling thread until the signal is resolved.

        Raises:
            CallbackTimeoutError: If nothing arrives within `timeout` seconds, or the signal was cancelled.
        """
        if not self._event.wait(timeout):
            # Close first so a delivery racing with the timeout is discarded, not half-consumed
            if self.cancel():
                logger.warning(f"Timed out after {timeout}s waiting for the authorization response")
                raise CallbackTimeoutError(f"Timed out after {timeout}s waiting for the authorization response")
        return self._result()

    async def wait(self, timeout: float | None = None) -> CallbackPayload:
        """
        Awaits the signal without blocking the event loop.

        Raises:
            CallbackTimeoutError: If nothing arrives within `timeout` seconds, or the signal was cancelled.
        """
        try:
            return await anyio.to_thread.run_sync(self.wait_blocking, timeout, abandon_on_cancel=True)
        except anyio.get_cancelled_exc_class():
            # Release the worker thread
            self.cancel()
            raise


def extract_state(payload: CallbackPayload) -> str | None:
    """Reads `state` from a redirect URL, a query/fragment string or a parameter mapping."""
    if isinstance(payload, Mapping):
        value = payload.get("state")
        return str(value) if value is not None else None

    text = payload.strip()
    parsed = urlparse(text)
    for part in (parsed.fragment, parsed.query, text.lstrip("?#") if not parsed.scheme else ""):
        if not part:
            continue
        params = dict(parse_qsl(part, keep_blank_values=True))
        if "state" in params:
            return params["state"]
    return None


class CallbackRegistry:
    """
    Routes inbound authorization responses to the signal waiting on their `state`.

    Thread-safe; `deliver` may be called from a listener thread while `expect`/`discard` run on
    the event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, CallbackSignal] = {}

    def expect(self, state: str) -> CallbackSignal:
        """Registers a fresh signal for `state`, replacing (and cancelling) any previous one."""
        signal = CallbackSignal(state)
        with self._lock:
            previous = self._pending.pop(state, None)
            self._pending[state] = signal
        if previous is not None:
            previous.cancel()
        return signal

    def discard(self, state: str) -> None:
        with self._lock:
            signal = self._pending.pop(state, None)
        if signal is not None:
            signal.cancel()

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def deliver(self, payload: CallbackPayload) -> bool:
        """
        Delivers an inbound redirect.

        Returns:
            bool: True if a waiter accepted it. Responses with an unknown or already completed
            `state` are logged and dropped.
        """
        state = extract_state(payload)
        if state is None:
            logger.warning("Dropped authorization response without state")
            return False

        with self._lock:
            signal = self._pending.pop(state, None)
        if signal is None or not signal.resolve(payload):
            logger.warning("Dropped authorization response for an unknown or expired state")
            return False
        logger.debug("Authorization response delivered")
        return True
