"""Clocks and named timers used by the call controller."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Source of time and scheduling for the call core."""

    def now(self) -> float:
        """Monotonic seconds used for durations and timers."""

    def utcnow(self) -> datetime:
        """Wall-clock time used for signal expiry checks."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopClock:
    """Clock backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(delay, 0.0), callback)


class _ManualHandle:
    __slots__ = ("when", "callback", "cancelled")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Simulated clock that only moves when :meth:`advance` is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self._epoch = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._now = 0.0
        self._queue: list[tuple[float, int, _ManualHandle]] = []
        self._sequence = itertools.count()

    def now(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return self._epoch + timedelta(seconds=self._now)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (handle.when, next(self._sequence), handle))
        return handle

    @property
    def scheduled(self) -> int:
        """Number of callbacks that are still due to fire."""

        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due callbacks in order."""

        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            handle.callback()
        self._now = target


class TimerRegistry:
    """Named, cancelable one-shot and repeating timers.

    Starting a timer under a name that is already scheduled replaces it.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._handles: dict[str, TimerHandle] = {}

    def start(
        self,
        name: str,
        delay: float,
        callback: Callable[[], None],
        *,
        repeat: bool = False,
    ) -> None:
        self.cancel(name)

        def fire() -> None:
            if repeat:
                self._handles[name] = self._clock.call_later(delay, fire)
            else:
                self._handles.pop(name, None)
            try:
                callback()
            except Exception:
                logger.exception("Timer %s callback failed", name)

        self._handles[name] = self._clock.call_later(delay, fire)

    def cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)

    def is_active(self, name: str) -> bool:
        return name in self._handles

    def pending(self) -> frozenset[str]:
        return frozenset(self._handles)


__all__ = ["Clock", "LoopClock", "ManualClock", "TimerHandle", "TimerRegistry"]
