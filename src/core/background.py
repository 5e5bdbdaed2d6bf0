"""Fire-and-forget background tasks for best-effort side effects."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

# Strong references so the event loop does not garbage-collect running tasks
_pending_tasks: set[asyncio.Task] = set()


def fire_and_forget(coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task:
    """Schedule a coroutine without awaiting it.

    Failures are logged and never propagate to the caller. Use this for side
    effects (emails, notifications) whose failure must not affect the business
    outcome that triggered them.

    Args:
        coro: Coroutine to run.
        description: Short label used in log messages.

    Returns:
        asyncio.Task: The scheduled task.
    """
    task = asyncio.create_task(coro)
    _pending_tasks.add(task)

    def _on_done(finished: asyncio.Task) -> None:
        _pending_tasks.discard(finished)
        if finished.cancelled():
            logger.warning("Background task cancelled: %s", description)
            return
        exc = finished.exception()
        if exc is not None:
            logger.error("Background task failed: %s: %s", description, exc)

    task.add_done_callback(_on_done)
    return task


async def drain_background_tasks(timeout: float | None = 5.0) -> None:
    """Wait for pending background tasks to finish.

    Called on application shutdown so in-flight emails are not cut off.
    """
    if not _pending_tasks:
        return
    done, pending = await asyncio.wait(set(_pending_tasks), timeout=timeout)
    if pending:
        logger.warning("%d background task(s) still running after drain", len(pending))
