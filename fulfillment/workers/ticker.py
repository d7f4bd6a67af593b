"""PeriodicTask — asyncio.Event-based interval loop for timer-driven work.

Used for the rolling-window top-up (every few hours, once at startup) and the
outbox sweep. A failing run is logged and the loop keeps going. Stop is
honoured between runs; a job that can stop early takes an ``on_stop`` hook,
which is called as soon as stop is requested.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
        on_stop: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._job = job
        self._run_immediately = run_immediately
        self._on_stop = on_stop
        self._stop = asyncio.Event()
        self.runs = 0
        self._log = logger.bind(task=name)

    def request_stop(self) -> None:
        self._stop.set()
        if self._on_stop is not None:
            self._on_stop()

    async def run(self) -> None:
        self._log.info("periodic_task_started", interval_seconds=self.interval_seconds)

        if not self._run_immediately and await self._wait_or_stop():
            return

        while not self._stop.is_set():
            try:
                await self._job()
            except Exception as exc:
                self._log.error(
                    "periodic_task_run_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
            self.runs += 1

            if await self._wait_or_stop():
                break

        self._log.info("periodic_task_stopped", runs=self.runs)

    async def _wait_or_stop(self) -> bool:
        """Sleep for one interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
        except TimeoutError:
            return False
        return True
