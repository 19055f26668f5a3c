from __future__ import annotations

import asyncio

import pytest

from metrics import INTERRUPTED_ITERATIONS, VUS, VUS_MAX, MetricsCollector
from ramp import RampProfile, RampScheduler, Stage, parse_duration, parse_stages, round_half_up
from scenario import VirtualUser
from tests.conftest import AcceleratedClock


@pytest.mark.parametrize(
    "text,expected",
    [("30s", 30.0), ("1m", 60.0), ("1m30s", 90.0), ("500ms", 0.5), ("2h", 7200.0), ("45", 45.0), ("0s", 0.0)],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", ["", "abc", "10x", "s30", "-5"])
def test_parse_duration_rejects_garbage(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parse_stages():
    assert parse_stages("30s:10, 1m:50,30s:0") == [Stage(30.0, 10), Stage(60.0, 50), Stage(30.0, 0)]
    with pytest.raises(ValueError):
        parse_stages("30s")
    with pytest.raises(ValueError):
        parse_stages("30s:ten")
    with pytest.raises(ValueError):
        parse_stages("30s:-1")
    with pytest.raises(ValueError):
        parse_stages("")


def test_round_half_up():
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(1.49) == 1
    assert round_half_up(0.0) == 0


def test_target_interpolates_linearly():
    profile = RampProfile([Stage(10, 10), Stage(10, 10), Stage(10, 0)])
    assert profile.total_duration_s == 30
    assert profile.peak_target == 10
    assert profile.target_at(0) == 0
    assert profile.target_at(5) == pytest.approx(5)
    assert profile.target_at(10) == pytest.approx(10)
    assert profile.target_at(15) == pytest.approx(10)
    assert profile.target_at(25) == pytest.approx(5)
    assert profile.target_at(30) == 0
    assert profile.target_at(99) == 0


def test_zero_duration_stage_jumps():
    profile = RampProfile([Stage(0, 5), Stage(10, 5)])
    assert profile.target_at(0.1) == pytest.approx(5)


def test_empty_profile_rejected():
    with pytest.raises(ValueError):
        RampProfile([])


class _Recorder:
    def __init__(self, clock: AcceleratedClock, iteration_s: float = 0.5) -> None:
        self.clock = clock
        self.iteration_s = iteration_s
        self.stop_events: dict[int, asyncio.Event] = {}
        self.finished: list[int] = []

    async def __call__(self, user: VirtualUser, stop_event: asyncio.Event) -> None:
        self.stop_events[user.id] = stop_event
        while not stop_event.is_set():
            await self.clock.wait(stop_event, self.iteration_s)
        self.finished.append(user.id)


@pytest.mark.asyncio
async def test_reconcile_converges_and_retires_newest_first(collector, clock):
    recorder = _Recorder(clock)
    scheduler = RampScheduler(RampProfile([Stage(10, 3)]), recorder, clock=clock, collector=collector)

    scheduler.reconcile(3)
    assert scheduler.active_count == 3
    await asyncio.sleep(0)
    scheduler.reconcile(1)
    assert scheduler.active_count == 1
    assert [uid for uid, event in sorted(recorder.stop_events.items()) if event.is_set()] == [2, 3]

    snapshot = collector.snapshot()
    assert snapshot.gauges[VUS].value == 1
    assert snapshot.gauges[VUS_MAX].value == 3

    assert await scheduler.drain() == 0
    assert scheduler.live_count == 0


@pytest.mark.asyncio
async def test_each_tick_matches_rounded_target(collector):
    clock = AcceleratedClock(factor=50.0)
    profile = RampProfile([Stage(10, 5), Stage(10, 0)])
    scheduler = RampScheduler(profile, _Recorder(clock), clock=clock, collector=collector, tick_s=1.0)

    stats = await scheduler.run()

    assert stats.history
    for tick in stats.history:
        assert tick.active == tick.target
        assert tick.target == round_half_up(profile.target_at(tick.elapsed_s))
    assert stats.peak_active == 5
    assert scheduler.live_count == 0
    assert stats.history[-1].active == 0
    assert stats.duration_s == pytest.approx(20, abs=3)
    assert not stats.aborted
    assert stats.interrupted == 0


@pytest.mark.asyncio
async def test_graceful_stop_cancels_stragglers(collector, clock):
    async def stubborn(user: VirtualUser, stop_event: asyncio.Event) -> None:
        await asyncio.sleep(3600)

    scheduler = RampScheduler(
        RampProfile([Stage(2, 2)]), stubborn, clock=clock, collector=collector, graceful_stop_s=1.0
    )
    stats = await scheduler.run()

    assert stats.interrupted == 2
    assert scheduler.live_count == 0
    assert collector.counter(INTERRUPTED_ITERATIONS) == 2


@pytest.mark.asyncio
async def test_abort_event_stops_ramp_early(collector, clock):
    abort = asyncio.Event()
    scheduler = RampScheduler(RampProfile([Stage(600, 2)]), _Recorder(clock), clock=clock, collector=collector)

    async def trip() -> None:
        await clock.sleep(3)
        abort.set()

    trigger = asyncio.create_task(trip())
    stats = await scheduler.run(abort_event=abort)
    await trigger

    assert stats.aborted
    assert stats.duration_s < 600
    assert scheduler.live_count == 0


def test_tick_must_be_positive(collector, clock):
    with pytest.raises(ValueError):
        RampScheduler(RampProfile([Stage(1, 1)]), _Recorder(clock), clock=clock, collector=collector, tick_s=0)


def test_graceful_stop_must_be_positive(collector, clock):
    with pytest.raises(ValueError):
        RampScheduler(
            RampProfile([Stage(1, 1)]), _Recorder(clock), clock=clock, collector=collector, graceful_stop_s=0
        )


@pytest.mark.asyncio
async def test_exited_workers_are_replaced(collector, clock):
    async def one_shot(user: VirtualUser, stop_event: asyncio.Event) -> None:
        return None

    scheduler = RampScheduler(RampProfile([Stage(5, 2)]), one_shot, clock=clock, collector=collector)
    scheduler.reconcile(2)
    for _ in range(3):
        await asyncio.sleep(0)
    assert scheduler.active_count == 0
    assert scheduler.live_count == 0

    scheduler.reconcile(2)
    assert scheduler.active_count == 2
    assert {worker.user.id for worker in scheduler._active} == {3, 4}
    assert await scheduler.drain() == 0


@pytest.mark.asyncio
async def test_ramp_keeps_target_with_short_lived_workers(collector, clock):
    async def one_shot(user: VirtualUser, stop_event: asyncio.Event) -> None:
        return None

    scheduler = RampScheduler(
        RampProfile([Stage(0, 3), Stage(5, 3)]), one_shot, clock=clock, collector=collector, tick_s=1.0
    )
    stats = await scheduler.run()

    assert stats.spawned > 3
    assert scheduler.live_count == 0


@pytest.mark.asyncio
async def test_failed_tick_cancels_live_workers(clock):
    class _BrokenGauges(MetricsCollector):
        def set_gauge(self, name: str, value: float) -> None:
            if value > 1:
                raise RuntimeError("gauge store offline")
            super().set_gauge(name, value)

    recorder = _Recorder(clock)
    scheduler = RampScheduler(RampProfile([Stage(0, 2), Stage(5, 2)]), recorder, clock=clock, collector=_BrokenGauges())

    with pytest.raises(RuntimeError):
        await scheduler.run()
    for _ in range(3):
        await asyncio.sleep(0)

    assert scheduler.live_count == 0
    assert scheduler.active_count == 0
