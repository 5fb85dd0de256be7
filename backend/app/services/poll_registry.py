# backend/app/services/poll_registry.py
"""
In-process registry of background generation pollers, keyed by session id.

At most one poller task runs per session in this process. Tasks remove
themselves from the registry when they finish; `shutdown()` cancels whatever
is still running (called from the application lifespan).
"""

from __future__ import annotations

import asyncio
import uuid
from functools import partial
from typing import Any, Awaitable, Callable, Dict

import structlog

logger = structlog.get_logger(__name__)


class GenerationPollRegistry:
    def __init__(self) -> None:
        self._tasks: Dict[uuid.UUID, asyncio.Task] = {}

    def is_active(self, session_id: uuid.UUID) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def ensure(self, session_id: uuid.UUID, factory: Callable[[], Awaitable[Any]]) -> bool:
        """
        Start `factory()` as the poller for `session_id` unless one is already running.
        Returns True if a new task was started.
        """
        if self.is_active(session_id):
            logger.debug("poller.already_active", session_id=str(session_id))
            return False

        task = asyncio.create_task(factory(), name=f"quiz-poller:{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(partial(self._on_done, session_id))
        logger.info("poller.started", session_id=str(session_id))
        return True

    def _on_done(self, session_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if task.cancelled():
            logger.info("poller.cancelled", session_id=str(session_id))
            return
        exc = task.exception()
        if exc is not None:
            logger.error("poller.crashed", session_id=str(session_id), error=str(exc), exc_info=exc)

    async def wait(self, session_id: uuid.UUID) -> None:
        """Block until the poller for `session_id` (if any) has finished."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("poller.registry.shutdown", cancelled=len(tasks))
        self._tasks.clear()
