"""
Tracking for concurrently running upload tasks.

Each task is registered under an id (the client file id) so a whole batch can
be cancelled at once and awaited without losing individual results.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class TaskManager:
    """Manages in-flight tasks and their lifecycle."""

    def __init__(self):
        self.tasks: Dict[str, asyncio.Task] = {}

    def create_task(self, coro: Coroutine[Any, Any, Any], task_id: str) -> asyncio.Task:
        """Start ``coro`` and track it under ``task_id``."""
        if task_id in self.tasks and not self.tasks[task_id].done():
            coro.close()
            raise ValueError(f"Task {task_id} is already running")

        task = asyncio.create_task(coro)
        self.tasks[task_id] = task
        task.add_done_callback(lambda t, tid=task_id: self._on_done(tid, t))
        return task

    def _on_done(self, task_id: str, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Task completed with error", task_id=task_id, error=str(task.exception()))

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a running task."""
        task = self.tasks.get(task_id)
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    def cancel_all(self) -> int:
        """Cancel every running task; returns how many were cancelled."""
        cancelled = 0
        for task_id in list(self.tasks):
            if self.cancel_task(task_id):
                cancelled += 1
        if cancelled:
            logger.info("Cancelled running tasks", count=cancelled)
        return cancelled

    async def wait_all(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Wait for every tracked task.

        Returns a mapping of task id to result, or to the raised exception.
        """
        if not self.tasks:
            return {}
        ids = list(self.tasks)
        gathered = asyncio.gather(*self.tasks.values(), return_exceptions=True)
        results = await asyncio.wait_for(gathered, timeout) if timeout else await gathered
        return dict(zip(ids, results))

    async def shutdown(self) -> None:
        """Cancel outstanding tasks and forget all of them."""
        self.cancel_all()
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()
