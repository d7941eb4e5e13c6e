from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Set

from app.core.logging import get_logger

logger = get_logger()


async def _guarded(coro: Awaitable[None], name: str) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        raise
    except Exception as e:
        # Best-effort side effect: never reaches the caller.
        logger.warning("detached_task_failed", task=name, error=str(e), error_type=type(e).__name__)


class DetachedTasks:
    """
    Fire-and-forget tasks owned by one invocation.

    Each task keeps a strong reference here until it finishes; `drain` awaits
    whatever is still running before the invocation returns.
    """

    def __init__(self) -> None:
        self._pending: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return sum(1 for t in self._pending if not t.done())

    def spawn(self, coro: Awaitable[None], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(_guarded(coro, name), name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: Optional[float] = 10.0) -> int:
        """Wait for outstanding tasks; returns how many were still running."""
        tasks = [t for t in self._pending if not t.done()]
        if not tasks:
            return 0
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("detached_tasks_cancelled", count=len(not_done))
        return len(tasks)
