# =============================================================================
# Cancellable Timers
# =============================================================================
# Background batches and reconnect attempts run "later". Rather than calling
# loop.call_later() directly, the engine asks an injected Scheduler for a
# Timer. Production code uses AsyncioScheduler; tests swap in a scheduler
# that records delays and fires callbacks on demand, so backoff and batching
# can be checked without sleeping.
#
# Every session keeps its timers in a TimerSet keyed by purpose
# ("reconnect", "background", ...). Scheduling under a key cancels whatever
# was there, and disconnecting cancels the whole set in one step.
# =============================================================================

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class Timer:
    """
    A deferred callback that can be cancelled before it fires.

    Subclasses decide how the waiting actually happens.
    """

    def __init__(self, delay: float, name: str = "") -> None:
        self.delay = delay
        self.name = name
        self._cancelled = False
        self._fired = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if self.pending:
            self._cancelled = True
            self._on_cancel()

    def _on_cancel(self) -> None:
        pass

    def __repr__(self) -> str:
        state = "pending" if self.pending else ("cancelled" if self._cancelled else "fired")
        return f"{type(self).__name__}(name={self.name!r}, delay={self.delay:.1f}, {state})"


class Scheduler(Protocol):
    """Anything that can run a coroutine callback after a delay."""

    def call_later(self, delay: float, callback: TimerCallback, *, name: str = "") -> Timer:
        ...


class AsyncioTimer(Timer):
    """A Timer backed by an asyncio task that sleeps, then awaits the callback."""

    def __init__(self, delay: float, callback: TimerCallback, name: str = "") -> None:
        super().__init__(delay, name)
        self._callback = callback
        self._task = asyncio.create_task(self._run(), name=name or None)

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        if self._cancelled:
            return
        self._fired = True
        try:
            await self._callback()
        except Exception as e:
            logger.error(f"Timer {self.name!r} callback failed: {e}", exc_info=True)

    def _on_cancel(self) -> None:
        # Once fired, the callback owns the task; only the sleep is cancellable
        if not self._fired:
            self._task.cancel()


class AsyncioScheduler:
    """The production Scheduler. Must be used from inside a running loop."""

    def call_later(self, delay: float, callback: TimerCallback, *, name: str = "") -> Timer:
        return AsyncioTimer(max(0.0, delay), callback, name)


class TimerSet:
    """
    A session's pending timers, one per purpose.

    Usage:
        timers = TimerSet()
        timers.replace("reconnect", scheduler.call_later(30, attempt))
        timers.cancel_all()
    """

    def __init__(self) -> None:
        self._timers: dict[str, Timer] = {}

    def replace(self, key: str, timer: Timer) -> Timer:
        """Store `timer` under `key`, cancelling any timer already there."""
        old = self._timers.get(key)
        if old is not None and old is not timer:
            old.cancel()
        self._timers[key] = timer
        return timer

    def get(self, key: str) -> Timer | None:
        return self._timers.get(key)

    def is_pending(self, key: str) -> bool:
        timer = self._timers.get(key)
        return timer is not None and timer.pending

    def cancel(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> None:
        timers, self._timers = self._timers, {}
        for timer in timers.values():
            timer.cancel()

    def __len__(self) -> int:
        return sum(1 for timer in self._timers.values() if timer.pending)
