"""
Background Tasks - Fire-and-forget side effects that are still observed.

Work that must not delay or fail a request (writing the cache, persisting a
scan record) is spawned here instead of being awaited inline. Every task is
tracked until it finishes, and a task that raises is logged, kept in a
bounded ``errors`` log, and handed to any subscribed error observers.

Example:
    >>> background = BackgroundTasks()
    >>> background.subscribe(lambda name, exc: print(name, exc))
    >>> background.spawn(cache.store(target, result), name="cache_store")
    >>> await background.drain()  # e.g. on shutdown or in tests
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Deque, List, Set

import structlog


ErrorObserver = Callable[[str, BaseException], None]


@dataclass
class BackgroundFailure:
    """One failed background task"""
    name: str
    error: BaseException
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundTasks:
    """Tracks spawned tasks and routes their failures to observers"""

    def __init__(self, max_errors: int = 100):
        self._tasks: Set[asyncio.Task] = set()
        self.errors: Deque[BackgroundFailure] = deque(maxlen=max_errors)
        self.observers: List[ErrorObserver] = []

        self.logger = structlog.get_logger(__name__)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def subscribe(self, observer: ErrorObserver) -> None:
        """Register a callback for failed background tasks"""
        self.observers.append(observer)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """
        Start ``coro`` without awaiting it.

        Must be called from inside the running event loop.
        """
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self) -> None:
        """Wait until every spawned task (including ones spawned meanwhile) is done"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self.logger.warning("background_task_cancelled", task=task.get_name())
            return

        error = task.exception()
        if error is None:
            return

        name = task.get_name()
        self.errors.append(BackgroundFailure(name=name, error=error))
        self.logger.warning(
            "background_task_failed",
            task=name,
            error_type=type(error).__name__,
            error=str(error),
        )
        for observer in self.observers:
            try:
                observer(name, error)
            except Exception as e:
                self.logger.error("background_observer_error", task=name, error=str(e))
