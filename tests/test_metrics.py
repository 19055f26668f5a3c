from __future__ import annotations

import random

import pytest

from metrics import (
    HTTP_REQ_DURATION,
    HTTP_REQS,
    MetricKind,
    MetricsCollector,
    Counter,
    Gauge,
    Rate,
    Trend,
    percentile,
)


def test_percentile_interpolates_between_ranks():
    values = [float(value) for value in range(1, 101)]
    assert percentile(values, 95.0) == pytest.approx(95.05)
    assert percentile(values, 50.0) == pytest.approx(50.5)
    assert percentile([], 95.0) is None
    assert percentile([7.0], 99.0) == 7.0


def test_rate_is_independent_of_sample_order():
    outcomes = [True] * 30 + [False] * 70
    first = MetricsCollector()
    second = MetricsCollector()
    for outcome in outcomes:
        first.add_rate("errors", outcome)
    shuffled = list(outcomes)
    random.Random(7).shuffle(shuffled)
    for outcome in shuffled:
        second.add_rate("errors", outcome)

    assert first.rate("errors") == pytest.approx(0.3)
    assert second.rate("errors") == first.rate("errors")


def test_unknown_rate_reads_as_zero():
    assert MetricsCollector().rate("missing") == 0.0


def test_add_dispatches_on_sample_type():
    collector = MetricsCollector()
    collector.add(Counter(HTTP_REQS))
    collector.add(Counter(HTTP_REQS, 2))
    collector.add(Gauge("vus", 4))
    collector.add(Gauge("vus", 1))
    collector.add(Rate("errors", True))
    collector.add(Trend(HTTP_REQ_DURATION, 12.5))

    snapshot = collector.snapshot()
    assert snapshot.counters[HTTP_REQS] == 3
    assert snapshot.gauges["vus"].value == 1
    assert snapshot.gauges["vus"].max == 4
    assert snapshot.rates["errors"].true_count == 1
    assert snapshot.trends[HTTP_REQ_DURATION] == [12.5]
    assert snapshot.kind_of("vus") is MetricKind.GAUGE
    assert snapshot.kind_of("nope") is None


def test_snapshot_is_detached_from_later_samples():
    collector = MetricsCollector()
    collector.add_trend(HTTP_REQ_DURATION, 1.0)
    snapshot = collector.snapshot()
    collector.add_trend(HTTP_REQ_DURATION, 2.0)
    assert snapshot.trends[HTTP_REQ_DURATION] == [1.0]
    assert collector.trend_values(HTTP_REQ_DURATION) == [1.0, 2.0]


def test_aggregate_statistics_per_kind():
    collector = MetricsCollector()
    for value in range(1, 101):
        collector.add_trend(HTTP_REQ_DURATION, float(value))
    collector.add_counter(HTTP_REQS, 10)
    collector.set_gauge("vus", 3)
    for outcome in (True, False, False, False):
        collector.add_rate("http_req_failed", outcome)
    snapshot = collector.snapshot()

    assert snapshot.aggregate(HTTP_REQ_DURATION, "p(95)") == pytest.approx(95.05)
    assert snapshot.aggregate(HTTP_REQ_DURATION, "avg") == pytest.approx(50.5)
    assert snapshot.aggregate(HTTP_REQ_DURATION, "min") == 1.0
    assert snapshot.aggregate(HTTP_REQ_DURATION, "max") == 100.0
    assert snapshot.aggregate(HTTP_REQ_DURATION, "med") == pytest.approx(50.5)
    assert snapshot.aggregate(HTTP_REQ_DURATION, "count") == 100
    assert snapshot.aggregate(HTTP_REQS, "count") == 10
    assert snapshot.aggregate("vus", "value") == 3
    assert snapshot.aggregate("http_req_failed", "rate") == pytest.approx(0.25)
    assert snapshot.aggregate("http_req_failed", "fails") == 3
    assert snapshot.aggregate("unknown_metric", "rate") is None


def test_aggregate_rejects_statistic_for_wrong_kind():
    collector = MetricsCollector()
    collector.add_rate("errors", False)
    with pytest.raises(ValueError):
        collector.snapshot().aggregate("errors", "p(95)")


def test_empty_trend_has_no_percentile():
    collector = MetricsCollector()
    collector.add_trend("custom", 1.0)
    snapshot = collector.snapshot()
    snapshot.trends["custom"].clear()
    assert snapshot.aggregate("custom", "p(95)") is None
    assert snapshot.aggregate("custom", "count") == 0
