from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import UploadCancelled

logger = logging.getLogger("shop_relay.jobs")

T = TypeVar("T")


class CancelToken:
    """Per-job cancellation handle.

    Every awaitable the driver issues for a job goes through ``guard()``, so
    a ``cancel()`` from another request interrupts the call that is in
    flight instead of only stopping the next step. Worker threads that
    cannot be interrupted poll ``cancelled`` instead.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("cancel callback %r failed", cb)
        return True

    def add_callback(self, cb: Callable[[], None]) -> None:
        if self._cancelled:
            cb()
        else:
            self._callbacks.append(cb)

    def remove_callback(self, cb: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(cb)
        except ValueError:
            pass

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise UploadCancelled("cancel token fired")

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` but abort it as soon as the token fires."""
        if self._cancelled:
            # close the coroutine so it is not reported as never awaited
            if asyncio.iscoroutine(aw):
                aw.close()
            raise UploadCancelled("cancel token fired")

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("operation raised while being cancelled", exc_info=True)
        raise UploadCancelled("cancel token fired")

    async def sleep(self, delay: float, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        await self.guard(sleep(delay))
