from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, duration_s: float) -> None: ...

    async def wait(self, event: asyncio.Event, timeout_s: float) -> bool: ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, duration_s: float) -> None:
        await asyncio.sleep(max(0.0, duration_s))

    async def wait(self, event: asyncio.Event, timeout_s: float) -> bool:
        """Sleep up to ``timeout_s`` and return early, with True, once ``event`` is set."""
        if event.is_set():
            return True
        if timeout_s <= 0:
            await asyncio.sleep(0)
            return event.is_set()
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return False
        return True
