from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from starlette.concurrency import run_in_threadpool


class PeriodicSweeper:
    """
    Runs ``sweep_once`` in the threadpool after ``initial_delay`` and then
    every ``interval`` until stopped. A failed run is logged and the loop
    carries on.
    """

    name = "sweeper"

    def __init__(self, interval: timedelta, initial_delay: timedelta, log: logging.Logger) -> None:
        self.interval = interval
        self.initial_delay = initial_delay
        self._log = log
        self._worker: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._lock = asyncio.Lock()

    def sweep_once(self) -> int:
        raise NotImplementedError

    async def start(self) -> None:
        async with self._lock:
            if self._worker and not self._worker.done():
                return
            self._stop_event = asyncio.Event()
            self._worker = asyncio.create_task(self._run(self._stop_event), name=self.name)

    async def stop(self) -> None:
        async with self._lock:
            if not self._worker:
                return
            self._stop_event.set()
            try:
                await self._worker
            finally:
                self._worker = None
                self._stop_event = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def _run(self, stop_event: asyncio.Event) -> None:
        delay = self.initial_delay.total_seconds()
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await run_in_threadpool(self.sweep_once)
            except Exception:
                self._log.exception("%s.run_failed", self.name)
            delay = self.interval.total_seconds()
