"""Cancellable scheduled tasks keyed by the slot they guard.

Scheduling under a key replaces (cancels) whatever was scheduled under it
before, so a slot can never have two live timers. Clearing a slot cancels
its timer deterministically.
"""
import asyncio
from typing import Awaitable, Callable, Dict

from .logging_setup import logger


class ScheduledTasks:
    """Run ``callback()`` after ``delay`` seconds, at most one task per key."""

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        return task

    async def _run(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(delay)
            # from here on the task is running, not pending: drop it from the
            # table so a reschedule from inside callback() does not cancel itself
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Scheduled task failed | key={key}")

    def cancel(self, key: str) -> bool:
        """Cancel the pending task under ``key``; True if one was pending."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()
