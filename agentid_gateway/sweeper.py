"""Cooperative periodic sweeps owned by the application lifespan.

Used for the nonce-ledger TTL purge and the stale-session expiry. A sweep
function runs in a worker thread so sqlite I/O never blocks the event loop.
A failing sweep is logged and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Optional

logger = logging.getLogger("agentid_gateway")


class PeriodicSweeper:
    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], int]):
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self.fn = fn
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"sweeper:{self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def run_once(self) -> int:
        removed = await asyncio.to_thread(self.fn)
        self.runs += 1
        if removed:
            logger.debug("Sweep %s removed %d entries", self.name, removed)
        return int(removed or 0)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep %s failed", self.name)
