"""Bounded in-process priority buffer.

The broker already orders its backlog by the ``priority`` property. Once
messages are prefetched, though, they arrive at this process in delivery
order; this buffer re-sorts the prefetched window so the consumer workers
always pick the most urgent delivery they hold. Equal priorities stay FIFO.

Strict priority means low-urgency work can starve under a sustained stream
of urgent work. That is accepted.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Generic, TypeVar

T = TypeVar("T")


class PriorityBuffer(Generic[T]):
    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.PriorityQueue[tuple[int, int, T]] = asyncio.PriorityQueue(maxsize)
        self._sequence = itertools.count()

    async def put(self, priority: int, item: T) -> None:
        await self._queue.put((-priority, next(self._sequence), item))

    def put_nowait(self, priority: int, item: T) -> None:
        self._queue.put_nowait((-priority, next(self._sequence), item))

    async def get(self) -> T:
        _, _, item = await self._queue.get()
        return item

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()
