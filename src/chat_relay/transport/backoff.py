"""
Capped exponential backoff with jitter.

Consecutive delays never decrease and never exceed ``cap``; reset() after a
successful connect starts the ladder again.
"""

import random
from typing import Callable


class ExponentialBackoff:
    def __init__(
        self,
        base: float = 0.5,
        cap: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.2,
        rand: Callable[[], float] = random.random,
    ):
        if base <= 0 or cap < base:
            raise ValueError("backoff requires 0 < base <= cap")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.multiplier = multiplier
        self.jitter = jitter
        self._rand = rand
        self.attempts = 0
        self._last = 0.0

    def next_delay(self) -> float:
        raw = min(self.cap, self.base * (self.multiplier ** self.attempts))
        # jitter only ever shortens the raw step, and never below the previous delay
        jittered = raw * (1.0 - self.jitter * self._rand())
        delay = min(self.cap, max(self._last, jittered))
        self.attempts += 1
        self._last = delay
        return delay

    def reset(self) -> None:
        self.attempts = 0
        self._last = 0.0
