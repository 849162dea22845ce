from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from zemicall.calls import LoopClock, ManualClock, TimerRegistry


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


def test_manual_clock_fires_callbacks_in_deadline_order(clock) -> None:
    fired: list[tuple[str, float]] = []
    clock.call_later(3, lambda: fired.append(("late", clock.now())))
    clock.call_later(1, lambda: fired.append(("early", clock.now())))
    clock.call_later(1, lambda: fired.append(("early-second", clock.now())))

    clock.advance(2)
    assert fired == [("early", 1.0), ("early-second", 1.0)]
    assert clock.now() == 2.0

    clock.advance(1)
    assert fired[-1] == ("late", 3.0)
    assert clock.scheduled == 0


def test_manual_clock_wall_time_tracks_monotonic_time() -> None:
    start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    clock = ManualClock(start)

    clock.advance(90)

    assert clock.utcnow() == start + timedelta(seconds=90)


def test_cancelled_handle_does_not_fire(clock) -> None:
    fired: list[str] = []
    handle = clock.call_later(1, lambda: fired.append("x"))
    handle.cancel()

    clock.advance(5)

    assert fired == []


def test_one_shot_timer_fires_once_and_clears(clock) -> None:
    timers = TimerRegistry(clock)
    fired: list[float] = []
    timers.start("ring", 45, lambda: fired.append(clock.now()))
    assert timers.is_active("ring")

    clock.advance(100)

    assert fired == [45.0]
    assert not timers.is_active("ring")
    assert timers.pending() == frozenset()


def test_restarting_a_named_timer_replaces_it(clock) -> None:
    timers = TimerRegistry(clock)
    fired: list[str] = []
    timers.start("reset", 2.5, lambda: fired.append("first"))
    clock.advance(2)
    timers.start("reset", 2.5, lambda: fired.append("second"))

    clock.advance(1)
    assert fired == []
    clock.advance(2)
    assert fired == ["second"]


def test_repeating_timer_keeps_a_fixed_cadence(clock) -> None:
    timers = TimerRegistry(clock)
    ticks: list[float] = []
    timers.start("tick", 1.0, lambda: ticks.append(clock.now()), repeat=True)

    clock.advance(3.5)

    assert ticks == [1.0, 2.0, 3.0]
    assert timers.is_active("tick")
    timers.cancel("tick")
    clock.advance(5)
    assert ticks == [1.0, 2.0, 3.0]


def test_cancel_all_stops_every_timer(clock) -> None:
    timers = TimerRegistry(clock)
    fired: list[str] = []
    for name in ("ring", "connect", "tick"):
        timers.start(name, 1, lambda name=name: fired.append(name))

    timers.cancel_all()
    clock.advance(10)

    assert fired == []
    assert timers.pending() == frozenset()


def test_failing_callback_is_logged_and_does_not_break_the_timer(clock, caplog) -> None:
    timers = TimerRegistry(clock)
    calls: list[float] = []

    def explode() -> None:
        calls.append(clock.now())
        raise RuntimeError("boom")

    timers.start("tick", 1, explode, repeat=True)
    with caplog.at_level(logging.ERROR, logger="zemicall.calls.clock"):
        clock.advance(2)

    assert calls == [1.0, 2.0]
    assert "Timer tick callback failed" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_loop_clock_schedules_on_the_running_loop() -> None:
    clock = LoopClock()
    fired = asyncio.Event()
    before = clock.now()

    clock.call_later(0.01, fired.set)
    await asyncio.wait_for(fired.wait(), timeout=1.0)

    assert clock.now() > before
    assert clock.utcnow().tzinfo is timezone.utc
