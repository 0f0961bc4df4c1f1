"""
Bounded outbound buffer.

FIFO, capacity-limited, never blocks the producer: on overflow the oldest
entry is dropped and counted.
"""

import logging
import threading
from collections import deque
from typing import Generic, Optional, TypeVar

from chat_relay import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OutboundBuffer(Generic[T]):
    def __init__(self, capacity: int = 1024):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.dropped = 0
        self._items: deque[T] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _drop_oldest(self) -> None:
        self._items.popleft()
        self.dropped += 1
        metrics.track_outbound_dropped()
        if self.dropped == 1 or self.dropped % 100 == 0:
            logger.warning(f"Outbound buffer full (capacity={self.capacity}), dropped {self.dropped} event(s) so far")

    def put(self, item: T) -> None:
        with self._lock:
            if len(self._items) >= self.capacity:
                self._drop_oldest()
            self._items.append(item)
            metrics.set_outbound_depth(len(self._items))

    def requeue(self, item: T) -> None:
        """Return an item that failed to send to the head of the queue.

        If the buffer filled up meanwhile, the item is itself the oldest and
        is the one dropped.
        """
        with self._lock:
            if len(self._items) >= self.capacity:
                self.dropped += 1
                metrics.track_outbound_dropped()
                return
            self._items.appendleft(item)
            metrics.set_outbound_depth(len(self._items))

    def pop(self) -> Optional[T]:
        with self._lock:
            if not self._items:
                return None
            item = self._items.popleft()
            metrics.set_outbound_depth(len(self._items))
            return item

    def snapshot(self) -> list[T]:
        with self._lock:
            return list(self._items)
