"""Background-task helpers that keep one failure from taking down the node.

Provides:
- ``supervised_task`` wraps create_task with error logging
- ``PeriodicTask`` calls a function on a fixed interval, used for the
  optional peer sweep
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


def supervised_task(coro: Awaitable[Any], *, name: str = "") -> asyncio.Task:
    """Schedule *coro* and log it if it dies with an exception.

    The discovery loops and the peer sweep run for the life of the node, so
    a crash there has to show up in the log instead of surfacing as an
    unretrieved task exception at shutdown.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _report(done: asyncio.Task) -> None:
        if done.cancelled() or done.exception() is None:
            return
        logger.error("[Chat/Tasks] {} crashed: {!r}", done.get_name(), done.exception())

    task.add_done_callback(_report)
    return task


class PeriodicTask:
    """Calls *func* every *interval* seconds until stopped.

    Parameters
    ----------
    name:
        Label used in log lines and the asyncio task name.
    func:
        Plain function or coroutine function.  An exception from one call is
        logged and the schedule continues.
    interval:
        Seconds to wait before each call.
    """

    def __init__(self, name: str, func: Callable[[], Any], interval: float = 10.0) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Run *func* once.  Returns ``False`` if it raised."""
        try:
            result = self.func()
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.warning("[Chat/{}] run failed: {}", self.name, exc)
            return False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    def start(self) -> None:
        if self.running:
            return
        self._task = supervised_task(self._run(), name=self.name)
        logger.debug("[Chat/{}] every {:.0f}s", self.name, self.interval)

    def stop(self) -> None:
        if self.running:
            self._task.cancel()  # type: ignore[union-attr]
        self._task = None
