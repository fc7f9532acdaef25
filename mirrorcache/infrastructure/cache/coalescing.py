"""Coalescing primitives for the replication cache.

CoalescingMap publishes a creation future before the first suspension, so
concurrent callers for the same key share a single creation. TaskRegistry
keeps handles of detached work (background prepares, TTL clears, preloads,
post-load prunes) so failures are logged and tests can wait for quiescence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Hashable, Iterator
from typing import Any, Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

logger = logging.getLogger(__name__)


class CoalescingMap(Generic[K, V]):
    """Get-or-create map whose values are created at most once per key.

    The creation runs as its own task, so a cancelled caller (the first one
    included) leaves it running for the others. A failed creation evicts the
    key so the next caller retries.
    """

    def __init__(self) -> None:
        self._futures: dict[K, asyncio.Future[V]] = {}

    async def get_or_create(self, key: K, factory: Callable[[], Awaitable[V]]) -> V:
        future = self._futures.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            self._futures[key] = future
            future.add_done_callback(lambda done: self._evict_failed(key, done))
        return await asyncio.shield(future)

    def _evict_failed(self, key: K, future: asyncio.Future[V]) -> None:
        # Retrieves the exception; waiters (if any) re-raise it themselves
        if future.cancelled() or future.exception() is not None:
            if self._futures.get(key) is future:
                del self._futures[key]

    def get(self, key: K) -> V | None:
        """Value for key if its creation completed successfully."""
        future = self._futures.get(key)
        if future is None or not future.done() or future.cancelled() or future.exception():
            return None
        return future.result()

    def pending(self, key: K) -> bool:
        future = self._futures.get(key)
        return future is not None and not future.done()

    def pop(self, key: K) -> V | None:
        value = self.get(key)
        self._futures.pop(key, None)
        return value

    def keys(self) -> list[K]:
        return list(self._futures)

    def values(self) -> list[V]:
        """Successfully created values."""
        return [v for v in (self.get(k) for k in list(self._futures)) if v is not None]

    def items(self) -> list[tuple[K, V]]:
        return [(k, v) for k in list(self._futures) if (v := self.get(k)) is not None]

    def clear(self) -> None:
        self._futures.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._futures

    def __len__(self) -> int:
        return len(self._futures)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._futures))


class TaskRegistry:
    """Registry of detached asyncio tasks.

    Each task is retained until done (asyncio keeps only weak references);
    exceptions are retrieved and logged so none goes unobserved.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Run a coroutine as a registered background task."""
        return self.track(asyncio.create_task(coro, name=name))

    def track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        """Register an existing task."""
        if task not in self._tasks:
            self._tasks.add(task)
            task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Replication cache background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    async def settle(self) -> None:
        """Wait until no registered task is pending (including ones spawned meanwhile)."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
