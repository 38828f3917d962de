"""In-process periodic tasks (BACKGROUND_MODE=inline)."""

import asyncio
import contextlib
from typing import Any, Awaitable, Callable

from fulfillment.core.logging import get_logger

log = get_logger(__name__)


class PeriodicTask:
    """Run an async callable every `interval` seconds; a failed tick is logged and the next tick retries."""

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]], interval: float) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def tick(self) -> None:
        try:
            await self.func()
        except Exception as e:
            log.exception("periodic_task_failed", task=self.name, error=str(e))

    async def run(self) -> None:
        log.info("periodic_task_started", task=self.name, interval=self.interval)
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("periodic_task_stopped", task=self.name)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
