"""
Supervised background tasks.

Idle sweeps, background verification and stream producers run detached from
the caller. They are registered here so failures are logged instead of lost
and shutdown can wait for (or cancel) whatever is still in flight.
"""

import asyncio
from typing import Coroutine, Optional, Set

from buildloop.core.logging_config import logger


class TaskSupervisor:
    """Owns detached asyncio tasks for one engine instance"""

    def __init__(self, name: str = "supervisor"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def active(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Schedule a coroutine as a supervised task"""
        if self._closed:
            coro.close()
            raise RuntimeError(f"[{self.name}] Supervisor is shut down")

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"[{self.name}] Task cancelled: {task.get_name()}")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"[{self.name}] Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__)
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for outstanding tasks, cancelling whatever is left after timeout.

        New tasks are refused once draining starts.
        """
        self._closed = True
        if not self._tasks:
            return

        pending = set(self._tasks)
        logger.info(f"[{self.name}] Draining {len(pending)} background task(s)")
        done, still_pending = await asyncio.wait(pending, timeout=timeout)

        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning(f"[{self.name}] Cancelled {len(still_pending)} task(s) at shutdown")
