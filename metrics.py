from __future__ import annotations

import math
import re
import statistics
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional, Union


HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
INTERRUPTED_ITERATIONS = "interrupted_iterations"
STEPS_SKIPPED = "steps_skipped"
ERRORS = "errors"
VUS = "vus"
VUS_MAX = "vus_max"
CHECK_PREFIX = "check:"

TREND_PERCENTILES = (90.0, 95.0, 99.0)

_PERCENTILE_STAT = re.compile(r"^p\((?P<pct>\d+(?:\.\d+)?)\)$")


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


def check_metric_name(check_name: str) -> str:
    return f"{CHECK_PREFIX}{check_name}"


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


@dataclass(frozen=True)
class Counter:
    name: str
    delta: float = 1.0


@dataclass(frozen=True)
class Gauge:
    name: str
    value: float


@dataclass(frozen=True)
class Rate:
    name: str
    outcome: bool


@dataclass(frozen=True)
class Trend:
    name: str
    value: float


MetricSample = Union[Counter, Gauge, Rate, Trend]


@dataclass(frozen=True)
class RateStats:
    true_count: int
    total_count: int

    @property
    def rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return float(self.true_count / self.total_count)

    @property
    def false_count(self) -> int:
        return self.total_count - self.true_count


@dataclass(frozen=True)
class GaugeStats:
    value: float
    min: float
    max: float


@dataclass(frozen=True)
class TrendStats:
    count: int
    avg: Optional[float]
    min: Optional[float]
    med: Optional[float]
    max: Optional[float]
    percentiles: dict[float, Optional[float]] = field(default_factory=dict)

    @classmethod
    def from_values(cls, values: list[float]) -> TrendStats:
        if not values:
            return cls(count=0, avg=None, min=None, med=None, max=None)
        return cls(
            count=len(values),
            avg=float(statistics.fmean(values)),
            min=float(min(values)),
            med=percentile(values, 50.0),
            max=float(max(values)),
            percentiles={pct: percentile(values, pct) for pct in TREND_PERCENTILES},
        )


@dataclass(frozen=True)
class MetricsSnapshot:
    taken_at_unix_ms: int
    elapsed_s: float
    counters: dict[str, float]
    gauges: dict[str, GaugeStats]
    rates: dict[str, RateStats]
    trends: dict[str, list[float]]

    def kind_of(self, name: str) -> Optional[MetricKind]:
        if name in self.counters:
            return MetricKind.COUNTER
        if name in self.gauges:
            return MetricKind.GAUGE
        if name in self.rates:
            return MetricKind.RATE
        if name in self.trends:
            return MetricKind.TREND
        return None

    def names(self) -> list[str]:
        return sorted(
            set(self.counters) | set(self.gauges) | set(self.rates) | set(self.trends)
        )

    def trend_stats(self, name: str) -> TrendStats:
        return TrendStats.from_values(self.trends.get(name, []))

    def aggregate(self, name: str, statistic: str) -> Optional[float]:
        """Resolve one statistic of a metric, or None when it has no data.

        Raises ValueError when the statistic does not apply to the metric kind.
        """
        statistic = statistic.strip()
        kind = self.kind_of(name)
        if kind is None:
            return None

        if kind is MetricKind.COUNTER:
            total = self.counters[name]
            if statistic == "count":
                return float(total)
            if statistic == "rate":
                return float(total / self.elapsed_s) if self.elapsed_s > 0 else 0.0

        elif kind is MetricKind.GAUGE:
            gauge = self.gauges[name]
            if statistic == "value":
                return gauge.value
            if statistic == "min":
                return gauge.min
            if statistic == "max":
                return gauge.max

        elif kind is MetricKind.RATE:
            stats = self.rates[name]
            if statistic == "rate":
                return stats.rate
            if statistic == "passes":
                return float(stats.true_count)
            if statistic == "fails":
                return float(stats.false_count)
            if statistic == "count":
                return float(stats.total_count)

        else:
            values = self.trends[name]
            if statistic == "count":
                return float(len(values))
            if not values:
                return None
            if statistic == "avg":
                return float(statistics.fmean(values))
            if statistic == "min":
                return float(min(values))
            if statistic == "max":
                return float(max(values))
            if statistic == "med":
                return percentile(values, 50.0)
            match = _PERCENTILE_STAT.match(statistic)
            if match:
                return percentile(values, float(match.group("pct")))

        raise ValueError(f"Statistic '{statistic}' is not supported for {kind.value} metric '{name}'")

    def to_dict(self) -> dict[str, Any]:
        trends: dict[str, Any] = {}
        for name in sorted(self.trends):
            stats = self.trend_stats(name)
            row = {
                "count": stats.count,
                "avg": stats.avg,
                "min": stats.min,
                "med": stats.med,
                "max": stats.max,
            }
            for pct, value in stats.percentiles.items():
                row[f"p({pct:g})"] = value
            trends[name] = row
        return {
            "taken_at_unix_ms": self.taken_at_unix_ms,
            "elapsed_s": self.elapsed_s,
            "counters": dict(sorted(self.counters.items())),
            "gauges": {name: asdict(stats) for name, stats in sorted(self.gauges.items())},
            "rates": {
                name: {
                    "rate": stats.rate,
                    "passes": stats.true_count,
                    "fails": stats.false_count,
                    "total": stats.total_count,
                }
                for name, stats in sorted(self.rates.items())
            },
            "trends": trends,
        }


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, list[float]] = {}
        self._rates: dict[str, list[int]] = {}
        self._trends: dict[str, list[float]] = {}

    def add_counter(self, name: str, delta: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + float(delta)

    def set_gauge(self, name: str, value: float) -> None:
        value = float(value)
        with self._lock:
            current = self._gauges.get(name)
            if current is None:
                self._gauges[name] = [value, value, value]
            else:
                current[0] = value
                current[1] = min(current[1], value)
                current[2] = max(current[2], value)

    def add_rate(self, name: str, outcome: bool) -> None:
        with self._lock:
            counts = self._rates.setdefault(name, [0, 0])
            if outcome:
                counts[0] += 1
            counts[1] += 1

    def add_trend(self, name: str, value: float) -> None:
        with self._lock:
            self._trends.setdefault(name, []).append(float(value))

    def add(self, sample: MetricSample) -> None:
        if isinstance(sample, Counter):
            self.add_counter(sample.name, sample.delta)
        elif isinstance(sample, Gauge):
            self.set_gauge(sample.name, sample.value)
        elif isinstance(sample, Rate):
            self.add_rate(sample.name, sample.outcome)
        elif isinstance(sample, Trend):
            self.add_trend(sample.name, sample.value)
        else:
            raise TypeError(f"Unsupported metric sample: {sample!r}")

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def rate(self, name: str) -> float:
        with self._lock:
            true_count, total_count = self._rates.get(name, (0, 0))
        return RateStats(true_count=true_count, total_count=total_count).rate

    def trend_values(self, name: str) -> list[float]:
        with self._lock:
            return list(self._trends.get(name, []))

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            counters = dict(self._counters)
            gauges = {
                name: GaugeStats(value=values[0], min=values[1], max=values[2])
                for name, values in self._gauges.items()
            }
            rates = {
                name: RateStats(true_count=counts[0], total_count=counts[1])
                for name, counts in self._rates.items()
            }
            trends = {name: list(values) for name, values in self._trends.items()}
        return MetricsSnapshot(
            taken_at_unix_ms=int(time.time() * 1000),
            elapsed_s=time.monotonic() - self._started,
            counters=counters,
            gauges=gauges,
            rates=rates,
            trends=trends,
        )
