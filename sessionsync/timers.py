"""Clock, timers and background tasks.

Every delayed or asynchronous action in sessionsync goes through a
Scheduler so that superseded timers can be cancelled explicitly and tests can
drive time by hand.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Coroutine, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler:
    """asyncio-backed scheduler.

    ``now()`` is a monotonic reading in seconds and is what all staleness and
    cooldown bookkeeping uses. ``wall_ms()`` is epoch milliseconds, the unit
    servers use for message timestamps.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.monotonic()

    def wall_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)

    def sleep(self, delay: float) -> Awaitable[None]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        self.call_later(delay, _wake)
        return future

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def resolved(self) -> asyncio.Future:
        """An already-completed future, for callers that may get real work."""
        future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return future

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task failed: %r", exc, exc_info=exc)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


def cancel(handle: TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
