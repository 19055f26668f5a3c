from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from http_client import Response
from metrics import ERRORS, MetricsCollector, check_metric_name


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Check:
    name: str
    predicate: Callable[[Response], bool]


def status_in(name: str, *statuses: int) -> Check:
    allowed = frozenset(statuses)
    return Check(name, lambda response: response.status in allowed)


def has_json_field(name: str, path: str) -> Check:
    return Check(name, lambda response: bool(response.json_value(path)))


def faster_than(name: str, limit_ms: float) -> Check:
    return Check(name, lambda response: response.elapsed_ms < limit_ms)


def run_checks(response: Response, checks: Sequence[Check], collector: MetricsCollector) -> bool:
    all_passed = True
    for check in checks:
        try:
            passed = bool(check.predicate(response))
        except Exception as exc:  # noqa: BLE001
            logger.debug("Check %r raised %s: %s", check.name, exc.__class__.__name__, exc)
            passed = False
        collector.add_rate(check_metric_name(check.name), passed)
        all_passed = all_passed and passed
    collector.add_rate(ERRORS, not all_passed)
    return all_passed
