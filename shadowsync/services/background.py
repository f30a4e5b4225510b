from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from shadowsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Own fire-and-forget tasks so they are neither garbage collected nor silent.

    Failures are observed only through logs and counters; nothing is re-raised
    to the code that submitted the task.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any] | None:
        if self._closed:
            # Shutdown already drained; close the coroutine so it is not left un-awaited.
            coro.close()
            logger.warning("background_task_rejected name=%s reason=closed", name)
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        set_gauge("background_tasks_pending", float(len(self._tasks)))
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        set_gauge("background_tasks_pending", float(len(self._tasks)))
        if task.cancelled():
            increment_counter("background_tasks_cancelled_total")
            return
        exc = task.exception()
        if exc is not None:
            increment_counter("background_task_failures_total")
            logger.error("background_task_failed name=%s", task.get_name(), exc_info=exc)
            return
        increment_counter("background_tasks_completed_total")

    async def drain(self, timeout_s: float | None = None) -> None:
        # Wait for in-flight tasks, including ones submitted by tasks being drained.
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout_s)
            self._tasks.difference_update(done)
            if not_done:
                logger.warning("background_drain_timeout pending=%s", len(not_done))
                for task in not_done:
                    task.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                return

    async def close(self, timeout_s: float | None = None) -> None:
        await self.drain(timeout_s)
        self._closed = True
