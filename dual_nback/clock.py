from __future__ import annotations

import heapq
import time
from collections.abc import Callable
from typing import Protocol


class Clock(Protocol):
    """Monotonic clock abstraction.

    Core logic depends on this interface rather than calling real time directly.
    """

    def now(self) -> float:
        """Return monotonic seconds."""


class RealClock:
    """Production clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


class TimerHandle:
    """Cancellable reference to one scheduled callback."""

    __slots__ = ("_when_s", "_callback", "_cancelled", "_fired")

    def __init__(self, when_s: float, callback: Callable[[], None]) -> None:
        self._when_s = float(when_s)
        self._callback = callback
        self._cancelled = False
        self._fired = False

    @property
    def when_s(self) -> float:
        return self._when_s

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        self._cancelled = True


class TimerScheduler:
    """Cooperative timer queue pumped from the host loop.

    Nothing fires on its own: ``run_due()`` dispatches every timer whose due
    time has passed, in due order. While a callback runs, ``now()`` reports
    that timer's due time, so a coarse pump cadence still produces exact
    trial timing.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = 0
        self._dispatch_time_s: float | None = None

    def now(self) -> float:
        if self._dispatch_time_s is not None:
            return self._dispatch_time_s
        return self._clock.now()

    def call_at(self, when_s: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(when_s, callback)
        heapq.heappush(self._queue, (handle.when_s, self._seq, handle))
        self._seq += 1
        return handle

    def pending_count(self) -> int:
        return sum(1 for _, _, handle in self._queue if handle.pending)

    def run_due(self) -> int:
        """Fire due timers, including ones scheduled by callbacks. Returns count fired."""

        if self._dispatch_time_s is not None:
            # Re-entrant pump from inside a callback; the outer loop drains the queue.
            return 0

        limit_s = self._clock.now()
        fired = 0
        while self._queue and self._queue[0][0] <= limit_s:
            when_s, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            handle._fired = True
            self._dispatch_time_s = when_s
            try:
                handle._callback()
            finally:
                self._dispatch_time_s = None
            fired += 1
        return fired

