"""Tracked background tasks for pipeline stages."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Hold strong references to running tasks, optionally keyed by call id."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task] = set()
        self._keyed: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, key: str | None = None) -> asyncio.Task:
        """Start ``coro``; a task already registered under ``key`` is cancelled first."""

        if key is not None:
            self.cancel(key)
        task = asyncio.create_task(coro, name=f"{self.name}:{key}" if key else self.name)
        self._tasks.add(task)
        if key is not None:
            self._keyed[key] = task
        task.add_done_callback(lambda done: self._on_done(done, key))
        return task

    def get(self, key: str) -> asyncio.Task | None:
        return self._keyed.get(key)

    def cancel(self, key: str) -> bool:
        task = self._keyed.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait(self) -> None:
        """Wait for every task currently registered (used by tests and shutdown)."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait()
        self._keyed.clear()

    def _on_done(self, task: asyncio.Task, key: str | None) -> None:
        self._tasks.discard(task)
        if key is not None and self._keyed.get(key) is task:
            del self._keyed[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)
