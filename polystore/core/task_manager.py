"""
Background task ownership for long-lived polystore components.

Subscriber delivery loops, the redis pub/sub reader and the periodic health
probe are all started through a ``ManagedObject`` so that ``stop()`` on the
owning component cancels and awaits everything it launched.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class TaskManager:
    """Tracks background tasks for one owner and cancels them on shutdown."""

    def __init__(self, owner: str = "TaskManager") -> None:
        self.owner = owner
        self.tasks: set[asyncio.Task[Any]] = set()
        self._closing = False

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        if self._closing:
            coro.close()
            raise RuntimeError(f"{self.owner} is shutting down; refusing new task {name}")

        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("[{}] started task {}", self.owner, task.get_name())
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("[{}] task {} failed: {}", self.owner, task.get_name(), error)

    def task_names(self) -> list[str]:
        """Names of tasks that have not finished yet."""
        return sorted(task.get_name() for task in self.tasks if not task.done())

    async def shutdown(self, timeout: float = 5.0) -> int:
        """Cancel every running task and wait for them.

        Returns the number of tasks that were still running after ``timeout``.
        """
        self._closing = True
        running = [task for task in self.tasks if not task.done()]
        if not running:
            return 0

        logger.debug("[{}] cancelling {} background tasks", self.owner, len(running))
        for task in running:
            task.cancel()
        _, stuck = await asyncio.wait(running, timeout=timeout)
        for task in stuck:
            logger.warning(
                "[{}] task {} did not stop within {}s", self.owner, task.get_name(), timeout
            )
        self.tasks.clear()
        return len(stuck)

    def reopen(self) -> None:
        """Accept new tasks again after a shutdown (component restarted)."""
        self._closing = False

    def __len__(self) -> int:
        return len(self.tasks)


class ManagedObject:
    """Base class for components that own background tasks."""

    def __init__(self, name: str | None = None) -> None:
        self._task_manager = TaskManager(name or self.__class__.__name__)

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        return self._task_manager.create_task(coro, name)

    def background_tasks(self) -> list[str]:
        return self._task_manager.task_names()

    async def shutdown(self) -> None:
        """Stop all background tasks; the object can be started again afterwards."""
        await self._task_manager.shutdown()
        self._task_manager.reopen()
