"""
Deduplicating, single-flight work queue for one resource type.

A key is in at most one of three places: waiting in the queue, being
processed by exactly one worker, or both "processing" and "dirty" when a
new event arrived while a worker held it. Dirty keys go back into the
queue when the worker calls ``done``, so a key is never handed to two
workers at once and no event is lost.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional, Set

from .models import PairKey, WorkItem
from .self_healing import KeyedRateLimiter

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised when adding to a queue that has been shut down."""
    pass


class WorkQueue:
    """
    Bounded async work queue with per-key single flight.

    Args:
        name: Queue name used in logs
        capacity: Maximum number of waiting keys; ``add`` blocks when full
        rate_limiter: Per-key backoff used by ``add_rate_limited``
    """

    def __init__(self, name: str, capacity: int = 10000, rate_limiter: Optional[KeyedRateLimiter] = None):
        self.name = name
        self.capacity = capacity
        self.rate_limiter = rate_limiter or KeyedRateLimiter()
        self._queue: Deque[PairKey] = deque()
        self._dirty: Dict[PairKey, WorkItem] = {}
        self._processing: Set[PairKey] = set()
        self._delayed: Dict[PairKey, asyncio.Task] = {}
        self._cond = asyncio.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: PairKey) -> bool:
        return key in self._processing

    def _insert(self, item: WorkItem) -> bool:
        """Mark the key dirty; returns True when the queue changed."""
        if item.key in self._dirty:
            return False
        self._dirty[item.key] = item
        if item.key not in self._processing:
            self._queue.append(item.key)
        return True

    async def add(self, item: WorkItem) -> None:
        """Enqueue an item, waiting for room when the queue is at capacity."""
        if self._shutting_down:
            raise QueueShutDown(self.name)
        async with self._cond:
            if item.key not in self._dirty:
                await self._cond.wait_for(
                    lambda: len(self._queue) < self.capacity or self._shutting_down
                )
                if self._shutting_down:
                    raise QueueShutDown(self.name)
            if self._insert(item):
                self._cond.notify_all()

    def add_after(self, item: WorkItem, delay: float) -> None:
        """Enqueue an item once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self._schedule(item, 0.0)
            return
        existing = self._delayed.get(item.key)
        if existing is not None and not existing.done():
            return
        self._schedule(item, delay)

    def _schedule(self, item: WorkItem, delay: float) -> None:
        async def _later() -> None:
            try:
                if delay:
                    await asyncio.sleep(delay)
                async with self._cond:
                    if not self._shutting_down and self._insert(item):
                        self._cond.notify_all()
            finally:
                if self._delayed.get(item.key) is task:
                    del self._delayed[item.key]

        task = asyncio.get_running_loop().create_task(_later())
        self._delayed[item.key] = task

    def add_rate_limited(self, item: WorkItem) -> float:
        """Requeue an item after its per-key backoff; returns the delay used."""
        delay = self.rate_limiter.when(item.key)
        self.add_after(item, delay)
        return delay

    def forget(self, key: PairKey) -> None:
        """Reset the key's backoff after a successful reconcile."""
        self.rate_limiter.forget(key)

    def num_requeues(self, key: PairKey) -> int:
        return self.rate_limiter.num_requeues(key)

    async def get(self) -> Optional[WorkItem]:
        """
        Wait for the next item.

        Returns None once the queue is shut down; the caller should exit.
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._queue or self._shutting_down)
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            item = self._dirty.pop(key)
            self._processing.add(key)
            self._cond.notify_all()
            return item

    async def done(self, item: WorkItem) -> None:
        """Release the key; if it was re-added while processing, queue it again."""
        async with self._cond:
            self._processing.discard(item.key)
            if item.key in self._dirty:
                self._queue.append(item.key)
                self._cond.notify_all()

    async def shutdown(self) -> None:
        """Wake all waiters and stop accepting work. In-flight items finish normally."""
        self._shutting_down = True
        for task in list(self._delayed.values()):
            task.cancel()
        self._delayed.clear()
        async with self._cond:
            self._cond.notify_all()
        logger.debug(f"Work queue '{self.name}' shut down")


__all__ = ["WorkQueue", "QueueShutDown"]
