# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import threading

import anyio
import pytest

from coreason_oidc.callback import CallbackRegistry, CallbackSignal, extract_state
from coreason_oidc.exceptions import CallbackTimeoutError

REDIRECT = "https://rp.example/cb?code=abc&state=s1"


class TestCallbackSignal:
    def test_resolves_once(self) -> None:
        signal = CallbackSignal("s1")

        assert signal.resolve(REDIRECT) is True
        assert signal.resolve("https://rp.example/cb?code=evil&state=s1") is False
        assert signal.wait_blocking(0) == REDIRECT
        assert signal.closed

    def test_timeout_closes_signal(self) -> None:
        signal = CallbackSignal("s1")

        with pytest.raises(CallbackTimeoutError, match="Timed out"):
            signal.wait_blocking(0.05)
        # Late delivery is rejected
        assert signal.resolve(REDIRECT) is False

    def test_cancelled_signal_raises(self) -> None:
        signal = CallbackSignal("s1")
        assert signal.cancel() is True
        assert signal.cancel() is False

        with pytest.raises(CallbackTimeoutError):
            signal.wait_blocking(1)

    def test_resolved_from_another_thread(self) -> None:
        signal = CallbackSignal("s1")
        threading.Timer(0.05, signal.resolve, args=(REDIRECT,)).start()

        assert signal.wait_blocking(5) == REDIRECT

    @pytest.mark.asyncio
    async def test_async_wait(self) -> None:
        signal = CallbackSignal("s1")
        threading.Timer(0.05, signal.resolve, args=({"code": "abc", "state": "s1"},)).start()

        assert await signal.wait(5) == {"code": "abc", "state": "s1"}

    @pytest.mark.asyncio
    async def test_async_wait_timeout(self) -> None:
        signal = CallbackSignal("s1")

        with pytest.raises(CallbackTimeoutError):
            await signal.wait(0.05)

    @pytest.mark.asyncio
    async def test_cancellation_closes_signal(self) -> None:
        signal = CallbackSignal("s1")

        with anyio.move_on_after(0.05):
            await signal.wait(None)

        assert signal.closed
        assert signal.resolve(REDIRECT) is False


@pytest.mark.parametrize(
    "payload, state",
    [
        (REDIRECT, "s1"),
        ("https://rp.example/cb#id_token=t&state=s2", "s2"),
        ("?code=abc&state=s3", "s3"),
        ("#state=s4", "s4"),
        ("code=abc&state=s5", "s5"),
        ({"state": "s6"}, "s6"),
        ("https://rp.example/cb?code=abc", None),
        ({}, None),
    ],
)
def test_extract_state(payload: str | dict[str, str], state: str | None) -> None:
    assert extract_state(payload) == state


class TestCallbackRegistry:
    def test_delivers_to_matching_state(self) -> None:
        registry = CallbackRegistry()
        signal = registry.expect("s1")
        other = registry.expect("s2")

        assert registry.deliver(REDIRECT) is True
        assert signal.wait_blocking(0) == REDIRECT
        assert not other.closed
        assert registry.pending() == 1

    def test_unknown_state_dropped(self) -> None:
        registry = CallbackRegistry()
        signal = registry.expect("s1")

        assert registry.deliver("https://rp.example/cb?code=abc&state=unknown") is False
        assert registry.deliver("https://rp.example/cb?code=abc") is False
        assert not signal.closed

    def test_second_delivery_dropped(self) -> None:
        registry = CallbackRegistry()
        registry.expect("s1")

        assert registry.deliver(REDIRECT) is True
        assert registry.deliver(REDIRECT) is False

    def test_late_delivery_after_timeout(self) -> None:
        registry = CallbackRegistry()
        signal = registry.expect("s1")

        with pytest.raises(CallbackTimeoutError):
            signal.wait_blocking(0.01)
        registry.discard("s1")

        assert registry.deliver(REDIRECT) is False
        assert registry.pending() == 0

    def test_expect_replaces_previous_signal(self) -> None:
        registry = CallbackRegistry()
        first = registry.expect("s1")
        second = registry.expect("s1")

        assert first.closed
        assert registry.deliver(REDIRECT) is True
        assert second.wait_blocking(0) == REDIRECT
        with pytest.raises(CallbackTimeoutError):
            first.wait_blocking(0)

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_resolve_once(self) -> None:
        registry = CallbackRegistry()
        signal = registry.expect("s1")
        results: list[bool] = []
        barrier = threading.Barrier(4)

        def deliver(i: int) -> None:
            barrier.wait()
            results.append(registry.deliver(f"https://rp.example/cb?code=c{i}&state=s1"))

        threads = [threading.Thread(target=deliver, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        payload = await signal.wait(5)
        for t in threads:
            t.join()

        assert sorted(results) == [False, False, False, True]
        assert isinstance(payload, str) and payload.endswith("&state=s1")
