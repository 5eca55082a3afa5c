"""Bounded per-connection outbound queue.

Backpressure policy when the queue is full:
    1. A new non-critical event (typing indicator) is dropped.
    2. A new critical event evicts the oldest queued non-critical event.
    3. If nothing can be evicted, ``offer`` returns False and the caller
       must close the connection instead of growing the queue.

The queue never holds more than ``capacity`` events.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional


@dataclass
class OutboundEvent:
    payload: dict
    critical: bool = True


class QueueClosed(Exception):
    """Raised by ``get``/``put`` once the queue has been closed."""


class OutboundQueue:
    """Bounded FIFO with a drop-oldest-non-critical overflow policy."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: Deque[OutboundEvent] = deque()
        self._closed = False
        self._not_empty = asyncio.Event()
        self._not_full = asyncio.Event()
        self._not_full.set()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_full(self) -> bool:
        return len(self._items) >= self.capacity

    def offer(self, payload: dict, critical: bool = True) -> bool:
        """Enqueue without waiting.

        Returns:
            False only when a critical event could not be queued; the
            connection must then be closed. Dropping a non-critical event
            still returns True.
        """
        if self._closed:
            return False
        if not self.is_full():
            self._push(OutboundEvent(payload, critical))
            return True
        if not critical:
            self.dropped += 1
            return True
        victim = self._oldest_non_critical()
        if victim is None:
            return False
        self._items.remove(victim)
        self.dropped += 1
        self._push(OutboundEvent(payload, critical))
        return True

    async def put(
        self, payload: dict, timeout: Optional[float] = None, reserve: int = 0
    ) -> None:
        """Enqueue a critical event, waiting for free space.

        ``reserve`` slots are left free for events that arrive through
        ``offer`` while the caller streams, so a bulk producer never fills
        the queue by itself. At least one slot is always usable.

        Raises:
            QueueClosed: If the queue is closed while waiting.
            asyncio.TimeoutError: If no space frees up within ``timeout``.
        """
        limit = max(1, self.capacity - reserve)
        while len(self._items) >= limit and not self._closed:
            self._not_full.clear()
            await asyncio.wait_for(self._not_full.wait(), timeout)
        if self._closed:
            raise QueueClosed()
        self._push(OutboundEvent(payload, True))

    async def get(self) -> dict:
        """Wait for and return the next payload.

        Raises:
            QueueClosed: Once the queue is closed (pending events are discarded).
        """
        while not self._items and not self._closed:
            self._not_empty.clear()
            await self._not_empty.wait()
        if self._closed:
            raise QueueClosed()
        event = self._items.popleft()
        self._not_full.set()
        return event.payload

    def get_nowait(self) -> Optional[dict]:
        """Pop the next payload if one is queued."""
        if not self._items:
            return None
        event = self._items.popleft()
        self._not_full.set()
        return event.payload

    def close(self) -> None:
        """Close the queue, discarding pending events and waking waiters."""
        if self._closed:
            return
        self._closed = True
        self._items.clear()
        self._not_empty.set()
        self._not_full.set()

    def _push(self, event: OutboundEvent) -> None:
        self._items.append(event)
        self._not_empty.set()

    def _oldest_non_critical(self) -> Optional[OutboundEvent]:
        for event in self._items:
            if not event.critical:
                return event
        return None
