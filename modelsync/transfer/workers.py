"""
Worker pool and per-key mutual exclusion for asyncio tasks.

Work items for different identifiers may run concurrently; work for the same
identifier is serialized through a ``KeyedLock``.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class KeyedLock:
    """
    One ``asyncio.Lock`` per key, created on demand and dropped when idle.

    Usage:
        locks = KeyedLock()
        async with locks.hold(identifier):
            ...
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


async def run_pool(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int = 1
) -> List[R]:
    """
    Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Results come back in the order of ``items``. An exception escaping a
    worker cancels the remaining workers and is re-raised.
    """
    items = list(items)
    results: List[R] = [None] * len(items)  # type: ignore[list-item]
    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    async def consume() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await worker(item)

    tasks = [asyncio.create_task(consume()) for _ in range(min(max(concurrency, 1), len(items)))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    return results
