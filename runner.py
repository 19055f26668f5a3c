from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from clock import Clock, MonotonicClock
from http_client import HttpClient, RequestRecord
from loadgen import build_worker_factory
from metrics import MetricsCollector, MetricsSnapshot
from ramp import RampProfile, RampScheduler, SchedulerStats, Stage
from report import write_run_outputs
from scenario import RunContext, ScenarioEngine
from thresholds import Threshold, ThresholdEvaluator, ThresholdReport, parse_thresholds
from workloads import Workload, get_workload


logger = logging.getLogger(__name__)


@dataclass
class RunConfig:
    base_url: str = "http://localhost"
    workload: str = "crud"
    stages: Optional[list[Stage]] = None
    weights: dict[str, float] = field(default_factory=dict)
    thresholds: Optional[list[tuple[str, str]]] = None
    abort_thresholds: list[tuple[str, str]] = field(default_factory=list)
    admin_email: str = "admin@distrischool.com"
    admin_password: str = "admin123"
    user_email: Optional[str] = None
    user_password: Optional[str] = None
    tick_s: float = 1.0
    graceful_stop_s: float = 30.0
    threshold_check_interval_s: float = 5.0
    timeout_s: float = 60.0
    seed: int = 42
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None
    log_requests: bool = False


class RunState(str, Enum):
    IDLE = "idle"
    SETTING_UP = "setting_up"
    RUNNING = "running"
    TEARING_DOWN = "tearing_down"
    COMPLETED = "completed"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.SETTING_UP}),
    RunState.SETTING_UP: frozenset({RunState.RUNNING, RunState.COMPLETED}),
    RunState.RUNNING: frozenset({RunState.TEARING_DOWN}),
    RunState.TEARING_DOWN: frozenset({RunState.COMPLETED}),
    RunState.COMPLETED: frozenset(),
}


@dataclass
class RunReport:
    passed: bool
    state: RunState
    workload: str
    metrics: MetricsSnapshot
    thresholds: ThresholdReport
    duration_s: float
    setup_error: Optional[str] = None
    run_error: Optional[str] = None
    aborted: bool = False
    scheduler: Optional[SchedulerStats] = None

    @property
    def verdict(self) -> str:
        return "passed" if self.passed else "failed"

    @property
    def violations(self) -> list[Threshold]:
        return self.thresholds.violations

    def to_dict(self) -> dict[str, Any]:
        scheduler = None
        if self.scheduler is not None:
            scheduler = asdict(self.scheduler)
        return {
            "passed": self.passed,
            "verdict": self.verdict,
            "state": self.state.value,
            "workload": self.workload,
            "duration_s": self.duration_s,
            "setup_error": self.setup_error,
            "run_error": self.run_error,
            "aborted": self.aborted,
            "violations": [str(threshold) for threshold in self.violations],
            "thresholds": [result.to_dict() for result in self.thresholds.results],
            "scheduler": scheduler,
            "metrics": self.metrics.to_dict(),
        }


ReportSink = Callable[[RunReport], None]


class RunController:
    def __init__(
        self,
        *,
        workload: Workload,
        profile: RampProfile,
        evaluator: ThresholdEvaluator,
        http: HttpClient,
        collector: MetricsCollector,
        base_url: str,
        base_context: Optional[Mapping[str, Any]] = None,
        clock: Optional[Clock] = None,
        tick_s: float = 1.0,
        graceful_stop_s: float = 30.0,
        threshold_check_interval_s: float = 5.0,
        seed: int = 42,
        report_sink: Optional[ReportSink] = None,
    ) -> None:
        self.workload = workload
        self.profile = profile
        self.evaluator = evaluator
        self.http = http
        self.collector = collector
        self.base_url = base_url
        self.base_context = dict(base_context or {})
        self.clock = clock or MonotonicClock()
        self.tick_s = tick_s
        self.graceful_stop_s = graceful_stop_s
        self.threshold_check_interval_s = threshold_check_interval_s
        self.seed = seed
        self.report_sink = report_sink
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    def _transition(self, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal run state transition {self._state.value} -> {new_state.value}")
        logger.info("Run state %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    async def run(self) -> RunReport:
        started = self.clock.now()
        self._transition(RunState.SETTING_UP)
        try:
            context = await self._setup()
        except Exception as exc:  # noqa: BLE001
            logger.error("Setup failed, aborting run before traffic: %s", exc)
            self._transition(RunState.COMPLETED)
            return self._complete(started, setup_error=str(exc) or exc.__class__.__name__)

        self._transition(RunState.RUNNING)
        stats: Optional[SchedulerStats] = None
        run_error: Optional[str] = None
        try:
            stats = await self._run_traffic(context)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Load phase failed; tearing down")
            run_error = f"{exc.__class__.__name__}: {exc}"
        finally:
            self._transition(RunState.TEARING_DOWN)
            await self._teardown(context)
            self._transition(RunState.COMPLETED)
        return self._complete(started, stats=stats, run_error=run_error)

    async def _setup(self) -> RunContext:
        data = dict(self.base_context)
        if self.workload.setup is not None:
            bootstrap = RunContext(base_url=self.base_url, data=data)
            data.update(await self.workload.setup(self.http, bootstrap))
        return RunContext(base_url=self.base_url, data=data)

    async def _teardown(self, context: RunContext) -> None:
        if self.workload.teardown is None:
            return
        try:
            await self.workload.teardown(self.http, context)
        except Exception:  # noqa: BLE001
            logger.exception("Teardown failed; verdict is unaffected")

    async def _run_traffic(self, context: RunContext) -> SchedulerStats:
        engine = ScenarioEngine(
            self.workload.scenarios,
            http=self.http,
            collector=self.collector,
            clock=self.clock,
            idle_pacing=self.workload.idle_pacing,
        )
        scheduler = RampScheduler(
            self.profile,
            build_worker_factory(context, engine, self.clock, self.collector),
            clock=self.clock,
            collector=self.collector,
            tick_s=self.tick_s,
            graceful_stop_s=self.graceful_stop_s,
            seed=self.seed,
        )
        logger.info(
            "Starting ramp: %d stages, %.1fs total, peak %d VUs",
            len(self.profile.stages),
            self.profile.total_duration_s,
            self.profile.peak_target,
        )

        abort_event = asyncio.Event()
        finished_event = asyncio.Event()
        watcher: Optional[asyncio.Task[None]] = None
        if self.evaluator.has_abort_thresholds:
            watcher = asyncio.create_task(self._watch_thresholds(abort_event, finished_event))
        try:
            stats = await scheduler.run(abort_event=abort_event)
        finally:
            finished_event.set()
            if watcher is not None:
                await watcher
        logger.info(
            "Ramp finished in %.1fs: peak %d VUs, %d spawned, %d interrupted",
            stats.duration_s,
            stats.peak_active,
            stats.spawned,
            stats.interrupted,
        )
        return stats

    async def _watch_thresholds(self, abort_event: asyncio.Event, finished_event: asyncio.Event) -> None:
        while not await self.clock.wait(finished_event, self.threshold_check_interval_s):
            report = self.evaluator.evaluate(self.collector)
            if report.should_abort():
                logger.warning(
                    "Aborting run, threshold crossed: %s",
                    ", ".join(str(threshold) for threshold in report.violations if threshold.abort_on_fail),
                )
                abort_event.set()
                return

    def _complete(
        self,
        started: float,
        setup_error: Optional[str] = None,
        run_error: Optional[str] = None,
        stats: Optional[SchedulerStats] = None,
    ) -> RunReport:
        snapshot = self.collector.snapshot()
        thresholds = self.evaluator.evaluate(snapshot)
        aborted = bool(stats and stats.aborted)
        report = RunReport(
            passed=setup_error is None and run_error is None and not aborted and thresholds.passed,
            state=self._state,
            workload=self.workload.name,
            metrics=snapshot,
            thresholds=thresholds,
            duration_s=self.clock.now() - started,
            setup_error=setup_error,
            run_error=run_error,
            aborted=aborted,
            scheduler=stats,
        )
        logger.info("Run %s (%d threshold violations)", report.verdict, len(report.violations))
        if self.report_sink is not None:
            self.report_sink(report)
        return report


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _resolved_config_dict(
    config: RunConfig,
    workload: Workload,
    profile: RampProfile,
    thresholds: list[Threshold],
    output_dir: Path,
) -> dict[str, Any]:
    payload = asdict(config)
    payload["output_dir"] = str(config.output_dir)
    payload["admin_password"] = "***"
    payload["user_password"] = "***" if config.user_password else None
    payload["stages"] = profile.to_list()
    payload["weights"] = {item.scenario.name: item.weight for item in workload.scenarios}
    payload["thresholds"] = [
        {"metric": threshold.metric, "expression": threshold.expression, "abort_on_fail": threshold.abort_on_fail}
        for threshold in thresholds
    ]
    payload["abort_thresholds"] = [list(pair) for pair in config.abort_thresholds]
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


def _request_logger(writer: AsyncJSONLWriter) -> Callable[[RequestRecord], Awaitable[None]]:
    async def on_request_done(record: RequestRecord) -> None:
        await writer.write(record.to_dict())

    return on_request_done


async def run_load_test(
    config: RunConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> tuple[RunReport, Path]:
    workload = get_workload(config.workload).with_weights(config.weights)
    profile = RampProfile(config.stages or workload.stages)
    threshold_pairs = config.thresholds if config.thresholds is not None else list(workload.thresholds)
    thresholds = parse_thresholds(threshold_pairs) + parse_thresholds(config.abort_thresholds, abort_on_fail=True)

    output_dir = _ensure_output_dir(config.output_dir, config.run_name)
    resolved_config = _resolved_config_dict(config, workload, profile, thresholds, output_dir)
    _write_json(output_dir / "config.json", resolved_config)

    collector = MetricsCollector()
    request_writer = AsyncJSONLWriter(output_dir / "requests.jsonl") if config.log_requests else None

    max_connections = max(profile.peak_target * 4, 64)
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 32),
    )

    def report_sink(report: RunReport) -> None:
        write_run_outputs(
            output_dir=output_dir,
            run_name=config.run_name or "run",
            resolved_config=resolved_config,
            report=report.to_dict(),
            metrics=report.metrics,
        )

    try:
        async with httpx.AsyncClient(limits=limits, transport=transport) as client:
            http = HttpClient(
                client,
                collector,
                timeout_s=config.timeout_s,
                on_request_done=_request_logger(request_writer) if request_writer is not None else None,
            )
            controller = RunController(
                workload=workload,
                profile=profile,
                evaluator=ThresholdEvaluator(thresholds),
                http=http,
                collector=collector,
                base_url=config.base_url,
                base_context={
                    "admin_email": config.admin_email,
                    "admin_password": config.admin_password,
                    "user_email": config.user_email or config.admin_email,
                    "user_password": config.user_password or config.admin_password,
                },
                clock=clock,
                tick_s=config.tick_s,
                graceful_stop_s=config.graceful_stop_s,
                threshold_check_interval_s=config.threshold_check_interval_s,
                seed=config.seed,
                report_sink=report_sink,
            )
            report = await controller.run()
    finally:
        if request_writer is not None:
            request_writer.close()

    return report, output_dir
