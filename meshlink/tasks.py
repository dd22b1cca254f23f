"""Background task helper.

``supervised_task`` wraps ``asyncio.create_task`` so that a crashed loop
(scan, accept, reader, poller) is logged instead of surfacing as an
unretrieved task exception at interpreter exit.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from loguru import logger


def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Schedule *coro* on the running loop and log any failure it raises."""
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("[Tasks] {!r} failed: {!r}", t.get_name(), exc)

    task.add_done_callback(_on_done)
    return task


async def cancel_and_wait(task: asyncio.Task | None) -> None:
    """Cancel *task* (if still running) and wait until it has finished."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        logger.debug("[Tasks] {!r} ended with {!r}", task.get_name(), exc)
