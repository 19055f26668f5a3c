from __future__ import annotations

import json

import httpx
import pytest

from http_client import FAILED_STATUS, RequestRecord, Response
from metrics import HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS
from tests.conftest import make_http, mock_client


@pytest.mark.asyncio
async def test_successful_request_records_metrics(collector):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": 3, "nested": {"token": "abc"}})

    async with mock_client(handler) as client:
        response = await make_http(client, collector).send(
            "post", "http://test/items", headers={"X-Test": "1"}, body={"name": "a"}, params={"page": "1"}
        )

    assert response.status == 201
    assert response.ok
    assert response.json_value("nested.token") == "abc"
    assert seen[0].method == "POST"
    assert seen[0].headers["X-Test"] == "1"
    assert seen[0].url.params["page"] == "1"
    assert json.loads(seen[0].content) == {"name": "a"}
    assert collector.counter(HTTP_REQS) == 1
    assert len(collector.trend_values(HTTP_REQ_DURATION)) == 1
    assert collector.rate(HTTP_REQ_FAILED) == 0.0


@pytest.mark.asyncio
async def test_transport_error_maps_to_failed_status(collector):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        response = await make_http(client, collector).send("GET", "http://test/health")

    assert response.status == FAILED_STATUS
    assert response.transport_failed
    assert not response.ok
    assert "connection refused" in (response.error or "")
    assert response.json_value("token") is None
    assert collector.rate(HTTP_REQ_FAILED) == 1.0


@pytest.mark.asyncio
async def test_client_errors_count_as_failed_requests(collector):
    async with mock_client(lambda request: httpx.Response(404, text="missing")) as client:
        response = await make_http(client, collector).send("GET", "http://test/students/9")

    assert response.status == 404
    assert response.error == "missing"
    assert collector.rate(HTTP_REQ_FAILED) == 1.0


@pytest.mark.asyncio
async def test_request_callback_receives_record(collector):
    records: list[RequestRecord] = []

    async def on_request_done(record: RequestRecord) -> None:
        records.append(record)

    async with mock_client(lambda request: httpx.Response(200, text="ok")) as client:
        http = make_http(client, collector)
        http.on_request_done = on_request_done
        await http.send("GET", "http://test/ok", name="ok call", scenario="smoke", vu_id=4)

    assert len(records) == 1
    record = records[0].to_dict()
    assert record["name"] == "ok call"
    assert record["scenario"] == "smoke"
    assert record["vu_id"] == 4
    assert record["http_status"] == 200
    assert record["bytes_received"] == 2


def test_json_value_walks_lists():
    response = Response(method="GET", url="u", status=200, body=b'{"items": [{"id": 1}, {"id": 2}]}')
    assert response.json_value("items.1.id") == 2
    assert response.json_value("items.5.id", default="none") == "none"
