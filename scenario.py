from __future__ import annotations

import logging
import random
from collections import ChainMap
from dataclasses import dataclass, field
from itertools import accumulate
from types import MappingProxyType
from typing import Any, Callable, Mapping, MutableMapping, Optional, Sequence, TypeVar

from checks import Check, run_checks
from clock import Clock
from http_client import HttpClient, Response
from metrics import STEPS_SKIPPED, MetricsCollector


logger = logging.getLogger(__name__)

T = TypeVar("T")

WEIGHT_TOLERANCE = 1e-9
BOUND_DIGITS = 12

Extractor = Callable[[Response], Mapping[str, Any]]
Preparer = Callable[[MutableMapping[str, Any], random.Random], None]


@dataclass(frozen=True)
class RunContext:
    base_url: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass
class VirtualUser:
    id: int
    rng: random.Random
    local_state: dict[str, Any] = field(default_factory=dict)
    iterations: int = 0


def render_template(template: Any, values: Mapping[str, Any]) -> Any:
    if callable(template):
        return template(values)
    if isinstance(template, str):
        return template.format_map(values)
    if isinstance(template, dict):
        return {key: render_template(value, values) for key, value in template.items()}
    if isinstance(template, (list, tuple)):
        return [render_template(value, values) for value in template]
    return template


def join_url(base_url: str, path: str) -> str:
    if path.startswith(("http://", "https://")):
        return path
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass(frozen=True)
class RequestSpec:
    method: str
    path: str
    headers: Mapping[str, Any] = field(default_factory=dict)
    body: Any = None
    params: Mapping[str, Any] = field(default_factory=dict)
    timeout_s: Optional[float] = None


@dataclass(frozen=True)
class RenderedRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: Any
    params: dict[str, Any]
    timeout_s: Optional[float]


def render_request(spec: RequestSpec, base_url: str, values: Mapping[str, Any]) -> RenderedRequest:
    return RenderedRequest(
        method=spec.method.upper(),
        url=join_url(base_url, render_template(spec.path, values)),
        headers={key: str(value) for key, value in render_template(dict(spec.headers), values).items()},
        body=render_template(spec.body, values),
        params=render_template(dict(spec.params), values),
        timeout_s=spec.timeout_s,
    )


def extract_json(**paths: str) -> Extractor:
    """Build an extractor mapping local-state keys to dotted JSON paths in the response."""

    def extractor(response: Response) -> dict[str, Any]:
        return {key: response.json_value(path) for key, path in paths.items()}

    return extractor


@dataclass(frozen=True)
class ScenarioStep:
    name: str
    request: RequestSpec
    checks: tuple[Check, ...] = ()
    extract: Optional[Extractor] = None
    requires: tuple[str, ...] = ()
    fallback: Optional[ScenarioStep] = None
    prepare: Optional[Preparer] = None
    resets: tuple[str, ...] = ()
    trend: Optional[str] = None
    think_time: Optional[tuple[float, float]] = None


@dataclass(frozen=True)
class Scenario:
    name: str
    steps: tuple[ScenarioStep, ...]
    pacing: tuple[float, float] = (0.0, 0.0)


@dataclass(frozen=True)
class WeightedScenario:
    scenario: Scenario
    weight: float


@dataclass
class StepOutcome:
    name: str
    status: str
    http_status: Optional[int] = None
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


@dataclass
class ScenarioOutcome:
    scenario: Optional[str]
    steps: list[StepOutcome] = field(default_factory=list)
    pacing_s: float = 0.0

    @property
    def passed(self) -> bool:
        return all(step.status != "failed" for step in self.steps)

    @property
    def skipped_steps(self) -> list[str]:
        return [step.name for step in self.steps if step.skipped]


def validate_weights(weights: Sequence[float]) -> None:
    for weight in weights:
        if weight < 0:
            raise ValueError(f"Scenario weights must be >= 0, got {weight}")
    total = sum(weights)
    if total > 1.0 + WEIGHT_TOLERANCE:
        raise ValueError(f"Scenario weights must sum to <= 1.0, got {total:.6f}")


def cumulative_bounds(weights: Sequence[float]) -> list[float]:
    """Upper edge of each weight's band, rounded so edges match the configured partition."""
    bounds = [round(bound, BOUND_DIGITS) for bound in accumulate(weights)]
    if bounds and abs(bounds[-1] - 1.0) <= WEIGHT_TOLERANCE:
        bounds[-1] = 1.0
    return bounds


def _pick_band(bounds: Sequence[float], items: Sequence[T], draw: float) -> Optional[T]:
    if not 0.0 <= draw < 1.0:
        raise ValueError(f"Draw must be in [0, 1), got {draw}")
    for bound, item in zip(bounds, items):
        if draw < bound:
            return item
    return None


def select_weighted(options: Sequence[tuple[float, T]], draw: float) -> Optional[T]:
    """Return the option whose cumulative band contains ``draw``, or None past the last band."""
    bounds = cumulative_bounds([weight for weight, _ in options])
    return _pick_band(bounds, [item for _, item in options], draw)


def draw_delay(rng: random.Random, bounds: Optional[tuple[float, float]]) -> float:
    if not bounds:
        return 0.0
    low, high = bounds
    if high <= low:
        return max(0.0, float(low))
    return rng.uniform(low, high)


class ScenarioEngine:
    def __init__(
        self,
        scenarios: Sequence[WeightedScenario],
        http: HttpClient,
        collector: MetricsCollector,
        clock: Clock,
        idle_pacing: tuple[float, float] = (1.0, 1.0),
    ) -> None:
        validate_weights([item.weight for item in scenarios])
        self.scenarios = list(scenarios)
        self.http = http
        self.collector = collector
        self.clock = clock
        self.idle_pacing = idle_pacing
        self._bounds = cumulative_bounds([item.weight for item in self.scenarios])
        self._choices = [item.scenario for item in self.scenarios]

    def select(self, draw: float) -> Optional[Scenario]:
        return _pick_band(self._bounds, self._choices, draw)

    async def run_scenario(self, context: RunContext, user: VirtualUser) -> ScenarioOutcome:
        scenario = self.select(user.rng.random())
        if scenario is None:
            return ScenarioOutcome(scenario=None, pacing_s=draw_delay(user.rng, self.idle_pacing))

        outcome = ScenarioOutcome(scenario=scenario.name)
        for step in scenario.steps:
            outcome.steps.append(await self._run_step(step, scenario, context, user))
        outcome.pacing_s = draw_delay(user.rng, scenario.pacing)
        return outcome

    async def _run_step(
        self,
        step: ScenarioStep,
        scenario: Scenario,
        context: RunContext,
        user: VirtualUser,
    ) -> StepOutcome:
        missing = self._missing_requirements(step, user)
        if missing and step.fallback is not None:
            await self._execute(step.fallback, scenario, context, user)
            missing = self._missing_requirements(step, user)
        if missing:
            return self._skip(step, user, f"missing state: {', '.join(missing)}")
        return await self._execute(step, scenario, context, user)

    @staticmethod
    def _missing_requirements(step: ScenarioStep, user: VirtualUser) -> list[str]:
        return [key for key in step.requires if user.local_state.get(key) is None]

    def _skip(self, step: ScenarioStep, user: VirtualUser, reason: str) -> StepOutcome:
        logger.debug("VU %d skipped step %r: %s", user.id, step.name, reason)
        self.collector.add_counter(STEPS_SKIPPED)
        return StepOutcome(name=step.name, status="skipped", reason=reason)

    async def _execute(
        self,
        step: ScenarioStep,
        scenario: Scenario,
        context: RunContext,
        user: VirtualUser,
    ) -> StepOutcome:
        for key in step.resets:
            user.local_state.pop(key, None)
        if step.prepare is not None:
            step.prepare(user.local_state, user.rng)

        values = ChainMap(
            user.local_state,
            dict(context.data),
            {"base_url": context.base_url, "vu": user.id, "iteration": user.iterations},
        )
        try:
            request = render_request(step.request, context.base_url, values)
        except KeyError as exc:
            return self._skip(step, user, f"missing template value {exc}")

        response = await self.http.send(
            request.method,
            request.url,
            headers=request.headers,
            body=request.body,
            timeout_s=request.timeout_s,
            params=request.params,
            name=step.name,
            scenario=scenario.name,
            vu_id=user.id,
        )
        if step.trend:
            self.collector.add_trend(step.trend, response.elapsed_ms)

        passed = run_checks(response, step.checks, self.collector) if step.checks else response.ok
        self._apply_extract(step, response, user)

        if step.think_time:
            await self.clock.sleep(draw_delay(user.rng, step.think_time))

        return StepOutcome(
            name=step.name,
            status="ok" if passed else "failed",
            http_status=response.status,
        )

    @staticmethod
    def _apply_extract(step: ScenarioStep, response: Response, user: VirtualUser) -> None:
        if step.extract is None:
            return
        try:
            updates = step.extract(response) or {}
        except Exception as exc:  # noqa: BLE001
            logger.debug("Extraction for step %r failed: %s", step.name, exc)
            return
        for key, value in updates.items():
            if value is not None:
                user.local_state[key] = value
