# =============================================================================
# Tests for Events, Timers and the Reconnection Policy
# =============================================================================

import asyncio
import random

import pytest

from conftest import FakeTimer
from hawk_sync.core import AuthenticationError, SyncError, TransportError, TransportTimeout
from hawk_sync.core.events import AuthFailed, EventBus, NewEmails
from hawk_sync.reconnect import FailureKind, ReconnectPolicy, classify_failure
from hawk_sync.timers import AsyncioScheduler, TimerSet


class TestEventBus:
    """Tests for event fan-out."""

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        bus = EventBus()
        seen = []

        async def async_listener(event):
            seen.append(("async", event.count))

        bus.subscribe(lambda event: seen.append(("sync", event.count)))
        bus.subscribe(async_listener)

        await bus.emit(NewEmails("acct-1", "user@gmail.com", count=2))

        assert seen == [("sync", 2), ("async", 2)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        await bus.emit(NewEmails("acct-1", "user@gmail.com", count=1))

        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_delivery(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)

        event = AuthFailed("acct-1", "user@gmail.com", reason="invalid_grant")
        await bus.emit(event)

        assert seen == [event]
        assert "listener bug" in caplog.text


class TestTimerSet:
    """Tests for per-session timer bookkeeping."""

    def test_replace_cancels_previous(self):
        timers = TimerSet()
        first = FakeTimer(30, lambda: None, "reconnect")
        second = FakeTimer(60, lambda: None, "reconnect")

        timers.replace("reconnect", first)
        timers.replace("reconnect", second)

        assert first.cancelled
        assert second.pending
        assert timers.get("reconnect") is second
        assert len(timers) == 1

    def test_cancel_all(self):
        timers = TimerSet()
        reconnect = timers.replace("reconnect", FakeTimer(30, lambda: None))
        background = timers.replace("background", FakeTimer(300, lambda: None))

        timers.cancel_all()

        assert reconnect.cancelled and background.cancelled
        assert len(timers) == 0
        assert not timers.is_pending("reconnect")

    def test_cancel_single(self):
        timers = TimerSet()
        timer = timers.replace("token", FakeTimer(60, lambda: None))

        timers.cancel("token")
        timers.cancel("token")

        assert timer.cancelled
        assert timers.get("token") is None


class TestAsyncioScheduler:
    """Tests for the production scheduler."""

    @pytest.mark.asyncio
    async def test_fires(self):
        fired = asyncio.Event()

        async def callback():
            fired.set()

        timer = AsyncioScheduler().call_later(0.01, callback, name="test")
        await asyncio.wait_for(fired.wait(), timeout=1)

        assert timer.fired

    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self):
        calls = []

        async def callback():
            calls.append(1)

        timer = AsyncioScheduler().call_later(0.01, callback)
        timer.cancel()
        await asyncio.sleep(0.05)

        assert calls == []
        assert timer.cancelled and not timer.fired

    @pytest.mark.asyncio
    async def test_callback_error_is_logged(self, caplog):
        async def callback():
            raise RuntimeError("batch exploded")

        timer = AsyncioScheduler().call_later(0, callback, name="background")
        await asyncio.sleep(0.02)

        assert timer.fired
        assert "batch exploded" in caplog.text


class TestReconnectPolicy:
    """Tests for backoff delays and failure classification."""

    def test_delays_without_jitter(self):
        policy = ReconnectPolicy(base_delay=30, max_attempts=5, jitter=0)
        assert [policy.delay(n) for n in range(5)] == [30, 60, 120, 240, 480]

    def test_jitter_is_bounded(self):
        policy = ReconnectPolicy(base_delay=30, jitter=5, rng=random.Random(42))
        for attempt in range(5):
            delay = policy.delay(attempt)
            assert 30 * 2 ** attempt <= delay <= 30 * 2 ** attempt + 5

    def test_exhausted(self):
        policy = ReconnectPolicy(max_attempts=5)
        assert not policy.exhausted(4)
        assert policy.exhausted(5)

    @pytest.mark.parametrize(
        "error, kind",
        [
            (AuthenticationError("AUTHENTICATIONFAILED"), FailureKind.AUTH),
            (TransportTimeout("read timed out"), FailureKind.TIMEOUT),
            (asyncio.TimeoutError(), FailureKind.TIMEOUT),
            (TransportError("connection reset"), FailureKind.TRANSPORT),
            (SyncError("anything else"), FailureKind.TRANSPORT),
        ],
    )
    def test_classify_failure(self, error, kind):
        assert classify_failure(error) is kind
