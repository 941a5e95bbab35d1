"""
Bounded per-subscription delivery queue.

The producer side (put, pause, resume, close) is used only by the Multiplexer
and never suspends, so a slow consumer cannot stall the connection's read
loop. When the queue is full the oldest update is dropped and the consumer's
next read raises SubscriptionOverflow once, however many updates were lost.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Optional

from .errors import SubscriptionOverflow


class SubscriptionQueue:
    """Single-producer queue of updates with overflow marker and terminal error."""

    def __init__(self, capacity: int = 64):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._items: Deque[Any] = deque()
        self._dropped = 0
        self._paused = False
        self._closed = False
        self._terminal: Optional[BaseException] = None
        self._wakeup = asyncio.Event()

    def __len__(self):
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def paused(self) -> bool:
        return self._paused

    # Producer side

    def put(self, value: Any) -> bool:
        """
        Enqueue a value without ever blocking.

        Returns:
            False if the oldest value had to be dropped to make room
        """
        if self._closed:
            return True
        accepted = True
        if len(self._items) >= self.capacity:
            self._items.popleft()
            self._dropped += 1
            accepted = False
        self._items.append(value)
        self._wakeup.set()
        return accepted

    def pause(self):
        """Make reads suspend until resume() or close()."""
        self._paused = True

    def resume(self):
        self._paused = False
        self._wakeup.set()

    def close(self, error: Optional[BaseException] = None, discard: bool = False):
        """
        End the queue.

        Buffered values are still delivered unless discard is set; error, if
        given, is raised once after them.
        """
        if self._closed:
            return
        self._closed = True
        self._paused = False
        self._terminal = error
        if discard:
            self._items.clear()
            self._dropped = 0
        self._wakeup.set()

    # Consumer side

    async def get(self) -> Any:
        """
        Wait for the next value.

        Raises:
            SubscriptionOverflow: values were dropped since the last read
            StopAsyncIteration: the queue is closed and drained
            the terminal error passed to close(), exactly once
        """
        while True:
            if not self._paused:
                if self._dropped:
                    dropped, self._dropped = self._dropped, 0
                    raise SubscriptionOverflow(dropped)
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    if self._terminal is not None:
                        error, self._terminal = self._terminal, None
                        raise error
                    raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    def reader(self) -> "QueueReader":
        return QueueReader(self)


class QueueReader:
    """Consumer-only view of a SubscriptionQueue: it can read, never produce."""

    __slots__ = ("_queue",)

    def __init__(self, queue: SubscriptionQueue):
        self._queue = queue

    @property
    def closed(self) -> bool:
        return self._queue.closed

    async def get(self) -> Any:
        return await self._queue.get()
