"""
Bounded record of recently seen dedup keys.

Capacity and TTL both bound the cache; whichever is reached first evicts the
oldest entries. Once evicted, a replayed key is treated as new.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Hashable

DEFAULT_CAPACITY = 10_000
DEFAULT_TTL_S = 300.0


class DedupCache:
    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self.capacity = capacity
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        # key -> expiry, insertion ordered so the head is always the oldest
        self._entries: "OrderedDict[Hashable, float]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._entries)

    def _prune(self, now: float) -> None:
        while self._entries:
            key, expiry = next(iter(self._entries.items()))
            if expiry > now:
                break
            self._entries.popitem(last=False)

    def _insert(self, key: Hashable, now: float) -> None:
        self._entries[key] = now + self.ttl_s
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def seen(self, key: Hashable) -> bool:
        now = self._clock()
        with self._lock:
            self._prune(now)
            return key in self._entries

    def remember(self, key: Hashable) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            self._insert(key, now)

    def check_and_remember(self, key: Hashable) -> bool:
        """Atomically record ``key``. Returns True on first sighting within the window."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            if key in self._entries:
                return False
            self._insert(key, now)
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
