"""
rate_limiter.py — Sliding-window admission control.

Keeps the timestamps of recent admissions. A call is admitted while fewer
than ``limit`` of them fall inside the trailing ``interval``. This is a
sliding-window counter, not a token bucket: a full burst of ``limit`` is
allowed again as soon as the oldest admissions age out.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque


class RateLimiter:
    """At most ``limit`` admissions per ``interval`` seconds."""

    def __init__(
        self,
        limit: int,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.interval = interval
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.interval:
            self._timestamps.popleft()

    def admit(self) -> bool:
        """Record and allow one admission, or deny without side effects."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._timestamps) < self.limit:
                self._timestamps.append(now)
                return True
            return False

    def in_window(self) -> int:
        """Number of admissions currently counted against the limit."""
        with self._lock:
            self._evict(self._clock())
            return len(self._timestamps)
