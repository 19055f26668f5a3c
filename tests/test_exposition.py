from __future__ import annotations

from prometheus_client.parser import text_string_to_metric_families

from exposition import metric_name, render_prometheus
from metrics import ERRORS, HTTP_REQ_DURATION, HTTP_REQS, VUS, MetricsCollector


def _families(text: str) -> dict[str, object]:
    return {family.name: family for family in text_string_to_metric_families(text)}


def _collector() -> MetricsCollector:
    collector = MetricsCollector()
    collector.add_counter(HTTP_REQS, 4)
    collector.set_gauge(VUS, 7)
    for value in (10.0, 20.0, 30.0, 40.0):
        collector.add_trend(HTTP_REQ_DURATION, value)
    for outcome in (True, False, False, False):
        collector.add_rate(ERRORS, outcome)
    collector.add_rate("check:login status 200", True)
    collector.add_rate("check:login status 200", False)
    return collector


def test_metric_name_sanitizes():
    assert metric_name("loadtest", "student_creation_duration") == "loadtest_student_creation_duration"
    assert metric_name("loadtest", "weird-name.v2") == "loadtest_weird_name_v2"


def test_exposition_round_trips_through_parser():
    families = _families(render_prometheus(_collector().snapshot()))

    reqs = families["loadtest_http_reqs"]
    assert reqs.type == "counter"
    assert [sample.value for sample in reqs.samples if sample.name == "loadtest_http_reqs_total"] == [4.0]

    assert families["loadtest_vus"].samples[0].value == 7.0

    duration = {sample.labels["stat"]: sample.value for sample in families["loadtest_http_req_duration"].samples}
    assert duration["count"] == 4
    assert duration["min"] == 10.0
    assert duration["max"] == 40.0
    assert duration["avg"] == 25.0
    assert set(duration) >= {"p90", "p95", "p99", "med"}

    assert families["loadtest_errors_rate"].samples[0].value == 0.25
    outcomes = {
        sample.labels["outcome"]: sample.value
        for sample in families["loadtest_errors_samples"].samples
        if sample.name.endswith("_total")
    }
    assert outcomes == {"true": 1.0, "false": 3.0}


def test_checks_are_labelled_by_name():
    families = _families(render_prometheus(_collector().snapshot()))

    rates = families["loadtest_check_rate"].samples
    assert [(sample.labels["check"], sample.value) for sample in rates] == [("login status 200", 0.5)]
    counts = {
        sample.labels["outcome"]: sample.value
        for sample in families["loadtest_check_samples"].samples
        if sample.name.endswith("_total")
    }
    assert counts == {"pass": 1.0, "fail": 1.0}


def test_custom_prefix_and_empty_snapshot():
    text = render_prometheus(MetricsCollector().snapshot(), prefix="k6")
    assert _families(text) == {}
