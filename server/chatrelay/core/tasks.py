from __future__ import annotations
import asyncio
import logging
from typing import Coroutine, Any, Set

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Owns detached background tasks that must outlive the request that spawned them.

    The event loop only keeps weak references to tasks, so every spawned task is
    held here until it finishes.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float) -> None:
        """Wait up to `timeout` seconds for running tasks, then cancel the rest."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info("Waiting for %d background task(s) to finish", len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            logger.warning("Cancelling background task %s at shutdown", task.get_name())
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
