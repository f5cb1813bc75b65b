"""Detached background tasks.

Tasks spawned here are not awaited by anyone; the module keeps a strong
reference until they finish and logs any failure.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from typing import Any
from typing import Coroutine

logger = logging.getLogger(__name__)

_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            exc_info=exc,
            extra={"task": task.get_name()},
        )


def spawn_background(coro: Coroutine[Any, Any, Any], *, description: str) -> asyncio.Task:
    """Run ``coro`` detached from the caller's context and cancellation."""
    task = asyncio.create_task(coro, name=description, context=contextvars.Context())
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_background_tasks() -> int:
    return len(_tasks)


__all__ = ["pending_background_tasks", "spawn_background"]
