from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from metrics import HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS, MetricsCollector


FAILED_STATUS = 0
_MISSING = object()


def now_unix_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Response:
    method: str
    url: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def transport_failed(self) -> bool:
        return self.status == FAILED_STATUS

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)

    def json_value(self, path: str, default: Any = None) -> Any:
        """Look up a dotted path in the JSON body; any miss or parse error yields ``default``."""
        try:
            current = self.json()
        except ValueError:
            return default
        for part in path.split("."):
            if isinstance(current, dict):
                current = current.get(part, _MISSING)
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return default
            if current is _MISSING:
                return default
        return current


@dataclass
class RequestRecord:
    request_id: str
    name: str
    scenario: Optional[str]
    vu_id: Optional[int]
    method: str
    url: str
    start_time_unix_ms: int
    end_time_unix_ms: int
    elapsed_ms: float
    status: str
    http_status: Optional[int]
    error: Optional[str]
    bytes_received: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _request_failed(status: int) -> bool:
    return status == FAILED_STATUS or not (200 <= status < 400)


def _body_kwargs(body: Any) -> dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, (bytes, str)):
        return {"content": body}
    return {"json": body}


class HttpClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        collector: MetricsCollector,
        timeout_s: float = 60.0,
        on_request_done: Optional[Callable[[RequestRecord], Awaitable[None]]] = None,
    ) -> None:
        self.client = client
        self.collector = collector
        self.timeout_s = timeout_s
        self.on_request_done = on_request_done

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        timeout_s: Optional[float] = None,
        params: Optional[Mapping[str, Any]] = None,
        name: Optional[str] = None,
        scenario: Optional[str] = None,
        vu_id: Optional[int] = None,
    ) -> Response:
        method = method.upper()
        start_time_ms = now_unix_ms()
        started = time.perf_counter()
        status = "ok"
        http_status = FAILED_STATUS
        response_headers: dict[str, str] = {}
        content = b""
        error_text: Optional[str] = None

        try:
            response = await self.client.request(
                method,
                url,
                headers=dict(headers or {}),
                params=dict(params) if params else None,
                timeout=timeout_s if timeout_s is not None else self.timeout_s,
                **_body_kwargs(body),
            )
            http_status = int(response.status_code)
            response_headers = dict(response.headers)
            content = response.content
            if response.status_code >= 400:
                status = "error"
                error_text = response.text[:2000]
        except httpx.TimeoutException as exc:
            status = "timeout"
            error_text = str(exc) or exc.__class__.__name__
        except httpx.HTTPError as exc:
            status = "error"
            error_text = str(exc) or exc.__class__.__name__
        except Exception as exc:  # noqa: BLE001
            status = "error"
            error_text = str(exc) or exc.__class__.__name__

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self.collector.add_counter(HTTP_REQS)
        self.collector.add_trend(HTTP_REQ_DURATION, elapsed_ms)
        self.collector.add_rate(HTTP_REQ_FAILED, _request_failed(http_status))

        if self.on_request_done is not None:
            await self.on_request_done(
                RequestRecord(
                    request_id=str(uuid.uuid4()),
                    name=name or f"{method} {url}",
                    scenario=scenario,
                    vu_id=vu_id,
                    method=method,
                    url=url,
                    start_time_unix_ms=start_time_ms,
                    end_time_unix_ms=now_unix_ms(),
                    elapsed_ms=elapsed_ms,
                    status=status,
                    http_status=http_status if http_status != FAILED_STATUS else None,
                    error=error_text,
                    bytes_received=len(content),
                )
            )

        return Response(
            method=method,
            url=url,
            status=http_status,
            headers=response_headers,
            body=content,
            elapsed_ms=elapsed_ms,
            error=error_text,
        )
