import asyncio
import logging
from collections import deque
from typing import Deque, Generic, Optional, TypeVar

from pulseprint.core.exceptions import QueueClosedError

logger = logging.getLogger("EventQueue")

T = TypeVar("T")

DEFAULT_CAPACITY = 100
# Emit a warning every N drops, the rest go to DEBUG
DROP_WARNING_EVERY = 100


class EventQueue(Generic[T]):
    """
    Fixed-capacity FIFO between the network side and the consumer side.

    push never waits: on overflow the oldest unconsumed event is evicted to make
    room for the newest and the drop counter goes up. pop suspends until an
    event arrives or the queue is closed. After close, pop keeps returning the
    buffered events and raises QueueClosedError once they are drained.

    Single event loop only: both sides must run on the loop that uses it.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._items: Deque[T] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def push(self, event: T) -> Optional[T]:
        """
        Enqueues event. Returns the evicted event when the queue was full, else None.
        Raises QueueClosedError once the queue is closed.
        """
        if self._closed:
            raise QueueClosedError("Cannot push to a closed queue")

        evicted = None
        if len(self._items) >= self._capacity:
            evicted = self._items.popleft()
            self.dropped += 1
            if self.dropped % DROP_WARNING_EVERY == 1:
                logger.warning(f"Queue full ({self._capacity}), dropping oldest events (dropped so far: {self.dropped})")
            else:
                logger.debug(f"Dropped oldest event, total dropped: {self.dropped}")

        self._items.append(event)
        self._ready.set()
        return evicted

    async def pop(self) -> T:
        while not self._items:
            if self._closed:
                raise QueueClosedError("Queue closed and drained")
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def close(self) -> None:
        """One-way and idempotent. Releases every pending pop."""
        if self._closed:
            return
        self._closed = True
        self._ready.set()
        logger.debug(f"Queue closed with {len(self._items)} buffered events")

    def __aiter__(self) -> "EventQueue[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.pop()
        except QueueClosedError:
            raise StopAsyncIteration
