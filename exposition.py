from __future__ import annotations

import re
from typing import Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from metrics import CHECK_PREFIX, MetricsSnapshot


DEFAULT_PREFIX = "loadtest"

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def metric_name(prefix: str, name: str) -> str:
    sanitized = _INVALID_NAME_CHARS.sub("_", name).strip("_")
    return f"{prefix}_{sanitized}"


def _stat_label(stat: str) -> str:
    return stat.replace("(", "").replace(")", "")


class SnapshotCollector(Collector):
    def __init__(self, snapshot: MetricsSnapshot, prefix: str = DEFAULT_PREFIX) -> None:
        self.snapshot = snapshot
        self.prefix = prefix

    def collect(self) -> Iterator[Metric]:
        snapshot = self.snapshot

        for name, total in sorted(snapshot.counters.items()):
            yield CounterMetricFamily(metric_name(self.prefix, name), f"Counter {name}", value=total)

        for name, gauge in sorted(snapshot.gauges.items()):
            yield GaugeMetricFamily(metric_name(self.prefix, name), f"Gauge {name}", value=gauge.value)

        check_rate = GaugeMetricFamily(
            f"{self.prefix}_check_rate", "Pass rate per named check", labels=["check"]
        )
        check_samples = CounterMetricFamily(
            f"{self.prefix}_check_samples", "Check outcomes per named check", labels=["check", "outcome"]
        )
        has_checks = False
        for name, stats in sorted(snapshot.rates.items()):
            if name.startswith(CHECK_PREFIX):
                check = name[len(CHECK_PREFIX):]
                check_rate.add_metric([check], stats.rate)
                check_samples.add_metric([check, "pass"], stats.true_count)
                check_samples.add_metric([check, "fail"], stats.false_count)
                has_checks = True
                continue
            family = metric_name(self.prefix, name)
            yield GaugeMetricFamily(f"{family}_rate", f"Rate {name}", value=stats.rate)
            samples = CounterMetricFamily(f"{family}_samples", f"Samples of rate {name}", labels=["outcome"])
            samples.add_metric(["true"], stats.true_count)
            samples.add_metric(["false"], stats.false_count)
            yield samples
        if has_checks:
            yield check_rate
            yield check_samples

        for name in sorted(snapshot.trends):
            trend = snapshot.trend_stats(name)
            family = GaugeMetricFamily(metric_name(self.prefix, name), f"Trend {name}", labels=["stat"])
            family.add_metric(["count"], trend.count)
            for stat, value in (("avg", trend.avg), ("min", trend.min), ("med", trend.med), ("max", trend.max)):
                if value is not None:
                    family.add_metric([stat], value)
            for pct, value in trend.percentiles.items():
                if value is not None:
                    family.add_metric([_stat_label(f"p({pct:g})")], value)
            yield family


def render_prometheus(snapshot: MetricsSnapshot, prefix: str = DEFAULT_PREFIX) -> str:
    registry = CollectorRegistry()
    registry.register(SnapshotCollector(snapshot, prefix=prefix))
    return generate_latest(registry).decode("utf-8")
