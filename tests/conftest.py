from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx
import pytest

from clock import MonotonicClock
from http_client import HttpClient
from metrics import MetricsCollector


class AcceleratedClock(MonotonicClock):
    """Clock whose seconds pass ``factor`` times faster than wall-clock seconds."""

    def __init__(self, factor: float = 100.0) -> None:
        self.factor = factor
        self._origin = time.monotonic()

    def now(self) -> float:
        return (time.monotonic() - self._origin) * self.factor

    async def sleep(self, duration_s: float) -> None:
        await asyncio.sleep(max(0.0, duration_s) / self.factor)

    async def wait(self, event: asyncio.Event, timeout_s: float) -> bool:
        return await super().wait(event, timeout_s / self.factor)


@pytest.fixture
def clock() -> AcceleratedClock:
    return AcceleratedClock(factor=100.0)


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


def json_response(status: int, payload: object) -> httpx.Response:
    return httpx.Response(status, json=payload)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_http(client: httpx.AsyncClient, collector: MetricsCollector) -> HttpClient:
    return HttpClient(client, collector, timeout_s=5.0)
