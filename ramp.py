from __future__ import annotations

import asyncio
import logging
import math
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from clock import Clock
from metrics import INTERRUPTED_ITERATIONS, VUS, VUS_MAX, MetricsCollector
from scenario import VirtualUser


logger = logging.getLogger(__name__)

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

WorkerFactory = Callable[[VirtualUser, asyncio.Event], Awaitable[None]]


def parse_duration(value: str) -> float:
    text = value.strip().lower()
    if not text:
        raise ValueError("Duration cannot be empty")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ValueError(f"Duration must be >= 0, got '{value}'")
        return seconds

    position = 0
    seconds = 0.0
    for match in _DURATION_TOKEN.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"Invalid duration '{value}'. Expected e.g. 30s, 1m, 1m30s, 500ms.")
    return seconds


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_s < 0:
            raise ValueError(f"Stage duration must be >= 0, got {self.duration_s}")
        if self.target < 0:
            raise ValueError(f"Stage target must be >= 0, got {self.target}")


def parse_stages(value: str) -> list[Stage]:
    parts = [part.strip() for part in value.split(",") if part.strip()]
    if not parts:
        raise ValueError("Stage list cannot be empty")
    stages: list[Stage] = []
    for part in parts:
        duration_text, sep, target_text = part.rpartition(":")
        if not sep:
            raise ValueError(f"Invalid stage '{part}'. Expected <duration>:<target>, e.g. 30s:10.")
        try:
            target = int(target_text)
        except ValueError as exc:
            raise ValueError(f"Invalid stage target in '{part}'. Expected an integer.") from exc
        stages.append(Stage(duration_s=parse_duration(duration_text), target=target))
    return stages


class RampProfile:
    def __init__(self, stages: Sequence[Stage]) -> None:
        if not stages:
            raise ValueError("Ramp profile needs at least one stage")
        self.stages: tuple[Stage, ...] = tuple(stages)

    @property
    def total_duration_s(self) -> float:
        return float(sum(stage.duration_s for stage in self.stages))

    @property
    def peak_target(self) -> int:
        return max(stage.target for stage in self.stages)

    def target_at(self, elapsed_s: float) -> float:
        """Linearly interpolated concurrency at ``elapsed_s`` seconds into the run."""
        if elapsed_s <= 0:
            return 0.0
        level = 0.0
        stage_start = 0.0
        for stage in self.stages:
            stage_end = stage_start + stage.duration_s
            if elapsed_s < stage_end:
                fraction = (elapsed_s - stage_start) / stage.duration_s
                return level + (stage.target - level) * fraction
            level = float(stage.target)
            stage_start = stage_end
        return level

    def to_list(self) -> list[dict[str, Any]]:
        return [{"duration_s": stage.duration_s, "target": stage.target} for stage in self.stages]


@dataclass
class TickRecord:
    elapsed_s: float
    target: int
    active: int


@dataclass
class SchedulerStats:
    duration_s: float
    peak_active: int
    spawned: int
    interrupted: int
    aborted: bool
    history: list[TickRecord] = field(default_factory=list)


@dataclass
class _Worker:
    user: VirtualUser
    stop_event: asyncio.Event
    task: asyncio.Task[None]


class RampScheduler:
    def __init__(
        self,
        profile: RampProfile,
        worker_factory: WorkerFactory,
        clock: Clock,
        collector: MetricsCollector,
        tick_s: float = 1.0,
        graceful_stop_s: float = 30.0,
        seed: int = 42,
    ) -> None:
        if tick_s <= 0:
            raise ValueError(f"Scheduler tick must be > 0, got {tick_s}")
        if graceful_stop_s <= 0:
            raise ValueError(f"Graceful stop must be > 0, got {graceful_stop_s}")
        self.profile = profile
        self.worker_factory = worker_factory
        self.clock = clock
        self.collector = collector
        self.tick_s = tick_s
        self.graceful_stop_s = graceful_stop_s
        self.seed = seed
        self.history: list[TickRecord] = []
        self.peak_active = 0
        self._active: list[_Worker] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._all_exited = asyncio.Event()
        self._all_exited.set()
        self._next_user_id = 1

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def live_count(self) -> int:
        return len(self._tasks)

    def _spawn(self) -> None:
        user_id = self._next_user_id
        self._next_user_id += 1
        user = VirtualUser(id=user_id, rng=random.Random(self.seed + (user_id * 971)))
        stop_event = asyncio.Event()
        task = asyncio.create_task(self.worker_factory(user, stop_event), name=f"vu-{user_id}")
        self._tasks.add(task)
        self._all_exited.clear()
        task.add_done_callback(self._on_worker_done)
        self._active.append(_Worker(user=user, stop_event=stop_event, task=task))

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        # Self-exited workers stop counting as live VUs.
        self._active = [worker for worker in self._active if worker.task is not task]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Worker %s exited with %r", task.get_name(), task.exception())
        if not self._tasks:
            self._all_exited.set()

    def _retire(self, count: int) -> None:
        for _ in range(min(count, len(self._active))):
            worker = self._active.pop()
            worker.stop_event.set()

    def _cancel_all(self) -> None:
        self._active.clear()
        for task in list(self._tasks):
            task.cancel()

    def reconcile(self, target: int) -> None:
        difference = target - len(self._active)
        if difference > 0:
            for _ in range(difference):
                self._spawn()
        elif difference < 0:
            self._retire(-difference)
        self.peak_active = max(self.peak_active, len(self._active))
        self.collector.set_gauge(VUS, len(self._active))
        self.collector.set_gauge(VUS_MAX, self.peak_active)

    async def run(self, abort_event: Optional[asyncio.Event] = None) -> SchedulerStats:
        total_s = self.profile.total_duration_s
        started = self.clock.now()
        spawned_before = self._next_user_id
        aborted = False

        try:
            while True:
                elapsed = self.clock.now() - started
                if abort_event is not None and abort_event.is_set():
                    aborted = True
                    break
                if elapsed >= total_s:
                    break
                target = round_half_up(self.profile.target_at(elapsed))
                self.reconcile(target)
                self.history.append(TickRecord(elapsed_s=elapsed, target=target, active=len(self._active)))
                sleep_for = min(self.tick_s, total_s - elapsed)
                if abort_event is not None:
                    await self.clock.wait(abort_event, sleep_for)
                else:
                    await self.clock.sleep(sleep_for)
        except BaseException:
            self._cancel_all()
            raise

        if aborted:
            logger.warning("Ramp aborted after %.1fs, draining %d workers", self.clock.now() - started, self.live_count)
        else:
            final_target = round_half_up(self.profile.target_at(total_s))
            self.reconcile(final_target)
            self.history.append(
                TickRecord(elapsed_s=self.clock.now() - started, target=final_target, active=len(self._active))
            )

        interrupted = await self.drain()
        return SchedulerStats(
            duration_s=self.clock.now() - started,
            peak_active=self.peak_active,
            spawned=self._next_user_id - spawned_before,
            interrupted=interrupted,
            aborted=aborted,
            history=list(self.history),
        )

    async def drain(self) -> int:
        self._retire(len(self._active))
        self.collector.set_gauge(VUS, 0)
        if not self._tasks:
            return 0
        logger.info("Draining %d workers (graceful stop %.1fs)", len(self._tasks), self.graceful_stop_s)
        await self.clock.wait(self._all_exited, self.graceful_stop_s)
        pending = list(self._tasks)
        if pending:
            logger.warning("Cancelling %d workers still running after graceful stop", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self.collector.add_counter(INTERRUPTED_ITERATIONS, len(pending))
        return len(pending)
