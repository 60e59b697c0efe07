from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Set

log = logging.getLogger(__name__)

_background: Set[asyncio.Task] = set()

def _done(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("background task %s failed: %s", task.get_name(), exc)

def spawn(coro: Awaitable, name: str) -> asyncio.Task:
    """Run a side effect without blocking or failing the caller."""
    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _background.add(task)
    task.add_done_callback(_done)
    return task

async def drain() -> None:
    while _background:
        await asyncio.gather(*list(_background), return_exceptions=True)
