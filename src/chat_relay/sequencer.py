"""
Per-origin sequencing.

Sequence numbers live in memory only: a restart resets the counter to 1 and
picks a fresh epoch, so (origin, epoch, sequence) never repeats across
restarts even though the sequence alone does.
"""

import threading
import time
import uuid
from typing import Callable, Optional


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class Sequencer:
    def __init__(self, epoch: Optional[str] = None, clock: Callable[[], int] = wall_clock_ms):
        self.epoch = epoch or uuid.uuid4().hex[:12]
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}

    def next(self, origin_id: str) -> int:
        """Return the next sequence for ``origin_id``. Thread-safe, never reused."""
        return self.stamp(origin_id)[0]

    def stamp(self, origin_id: str) -> tuple[int, int]:
        """Sequence and wall-clock timestamp taken under one lock."""
        with self._lock:
            seq = self._counters.get(origin_id, 0) + 1
            self._counters[origin_id] = seq
            return seq, self._clock()

    def current(self, origin_id: str) -> int:
        with self._lock:
            return self._counters.get(origin_id, 0)
