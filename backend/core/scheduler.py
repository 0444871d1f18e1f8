from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("shop_relay.jobs")


class RecurringTask:
    """Run ``fn`` every ``interval`` seconds on the running event loop.

    ``sleep`` is injectable so tests can drive ticks without waiting.
    A failing tick is logged and the schedule keeps going.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.fn = fn
        self.interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("recurring task %s started interval=%ss", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("recurring task %s stopped", self.name)

    async def run_once(self) -> None:
        try:
            result = self.fn()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("recurring task %s tick failed", self.name)
        finally:
            self.ticks += 1

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            await self.run_once()
