from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union

from metrics import MetricsCollector, MetricsSnapshot


logger = logging.getLogger(__name__)


_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION = re.compile(
    r"^\s*(?P<stat>[a-z]+(?:\(\s*\d+(?:\.\d+)?\s*\))?)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<value>-?\d+(?:\.\d+)?)\s*$"
)

_NAMED_STATISTICS = frozenset({"rate", "count", "avg", "min", "med", "max", "value", "passes", "fails"})
_PERCENTILE = re.compile(r"^p\((?P<pct>\d+(?:\.\d+)?)\)$")


def _is_known_statistic(statistic: str) -> bool:
    if statistic in _NAMED_STATISTICS:
        return True
    match = _PERCENTILE.match(statistic)
    return bool(match) and float(match.group("pct")) <= 100.0


@dataclass(frozen=True)
class Threshold:
    """A k6-style condition such as ``p(95)<2000`` over one named metric."""

    metric: str
    statistic: str
    op: str
    value: float
    abort_on_fail: bool = False

    @classmethod
    def parse(cls, metric: str, expression: str, abort_on_fail: bool = False) -> Threshold:
        if not metric.strip():
            raise ValueError("Threshold metric name cannot be empty")
        match = _EXPRESSION.match(expression)
        if not match:
            raise ValueError(
                f"Invalid threshold expression '{expression}' for '{metric}'. "
                "Expected <statistic><op><number>, e.g. p(95)<2000 or rate<0.05."
            )
        statistic = re.sub(r"\s+", "", match.group("stat"))
        if not _is_known_statistic(statistic):
            raise ValueError(
                f"Unknown statistic '{statistic}' in threshold '{expression}' for '{metric}'. "
                "Expected one of avg, count, fails, max, med, min, passes, rate, value or p(N)."
            )
        return cls(
            metric=metric.strip(),
            statistic=statistic,
            op=match.group("op"),
            value=float(match.group("value")),
            abort_on_fail=abort_on_fail,
        )

    @property
    def expression(self) -> str:
        return f"{self.statistic}{self.op}{self.value:g}"

    def predicate(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.value)

    def __str__(self) -> str:
        return f"{self.metric}: {self.expression}"


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: Optional[float]
    passed: bool

    @property
    def has_data(self) -> bool:
        return self.observed is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.threshold.metric,
            "expression": self.threshold.expression,
            "abort_on_fail": self.threshold.abort_on_fail,
            "observed": self.observed,
            "passed": self.passed,
            "has_data": self.has_data,
        }


@dataclass(frozen=True)
class ThresholdReport:
    results: list[ThresholdResult] = field(default_factory=list)

    @property
    def violations(self) -> list[Threshold]:
        return [result.threshold for result in self.results if not result.passed]

    @property
    def passed(self) -> bool:
        return not self.violations

    def should_abort(self) -> bool:
        return any(threshold.abort_on_fail for threshold in self.violations)


class ThresholdEvaluator:
    def __init__(self, thresholds: Sequence[Threshold]) -> None:
        self.thresholds = list(thresholds)

    @property
    def has_abort_thresholds(self) -> bool:
        return any(threshold.abort_on_fail for threshold in self.thresholds)

    def evaluate(self, source: Union[MetricsCollector, MetricsSnapshot]) -> ThresholdReport:
        snapshot = source.snapshot() if isinstance(source, MetricsCollector) else source
        results: list[ThresholdResult] = []
        for threshold in self.thresholds:
            try:
                observed = snapshot.aggregate(threshold.metric, threshold.statistic)
            except ValueError as exc:
                logger.warning("Threshold %s cannot be evaluated: %s", threshold, exc)
                results.append(ThresholdResult(threshold=threshold, observed=None, passed=False))
                continue
            # Metrics without samples are reported but never fail the run.
            passed = True if observed is None else threshold.predicate(observed)
            results.append(ThresholdResult(threshold=threshold, observed=observed, passed=passed))
        return ThresholdReport(results=results)


def parse_thresholds(pairs: Sequence[tuple[str, str]], abort_on_fail: bool = False) -> list[Threshold]:
    return [Threshold.parse(metric, expression, abort_on_fail) for metric, expression in pairs]
