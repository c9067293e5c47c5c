"""Periodic background jobs (health checks, auto-save).

Jobs are owned by the composition root so their lifecycle is explicit.
Tests drive jobs with run_once() instead of waiting for timers.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from shared.logging import get_logger

logger = get_logger(__name__)

JobCallback = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """Runs a callback every interval_seconds on the event loop."""

    def __init__(self, name: str, interval_seconds: float, callback: JobCallback) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback

        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info("Periodic task started", task=self.name, interval=self.interval_seconds)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def run_once(self) -> bool:
        """
        Run the callback now.

        Errors are logged and counted; the loop keeps going.

        Returns:
            True if the callback succeeded
        """
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.failures += 1
            logger.error("Periodic task failed", task=self.name, error=str(e), exc_info=True)
            return False

        self.runs += 1
        return True

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Periodic task stopped", task=self.name, runs=self.runs)


class Scheduler:
    """A named set of periodic tasks started and stopped together."""

    def __init__(self) -> None:
        self._tasks: dict[str, PeriodicTask] = {}

    @property
    def tasks(self) -> dict[str, PeriodicTask]:
        return dict(self._tasks)

    def add(self, name: str, interval_seconds: float, callback: JobCallback) -> PeriodicTask:
        """
        Register a job.

        Raises:
            ValueError: If a job with this name exists
        """
        if name in self._tasks:
            raise ValueError(f"Task '{name}' is already scheduled")

        task = PeriodicTask(name, interval_seconds, callback)
        self._tasks[name] = task
        return task

    def start(self) -> None:
        for task in self._tasks.values():
            task.start()

    async def stop(self) -> None:
        for task in self._tasks.values():
            await task.stop()

    async def run_once(self, name: str) -> bool:
        """
        Run one job immediately.

        Raises:
            KeyError: If no job has this name
        """
        return await self._tasks[name].run_once()
