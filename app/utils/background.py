"""
Background task tracking for fire-and-forget work.

The reply path spawns work here and never awaits it. Failures end up in the
log. Strong references are kept until each task finishes so the event loop
does not garbage-collect running tasks.
"""
import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTaskSet:
    """Owns detached asyncio tasks and logs their failures."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], label: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro)
        task.set_name(label or self.name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"❌ [{self.name}] {task.get_name()} failed (non-blocking): {exc}", exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every task spawned so far (and any they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
