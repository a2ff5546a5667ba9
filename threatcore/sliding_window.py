"""Sliding window for per-entity event accumulation.

Used by the anomaly detector to turn a stream of events into a request rate
per entity.  Deque-based: O(1) append, amortized O(1) eviction.

Time is event time, not wall-clock time: callers pass ``now`` (normally the
timestamp of the event being processed) so replays and tests behave the
same as live traffic.  Wall-clock ``time.time()`` is only the fallback.
"""

import time
from collections import deque

# Timestamps more than this many seconds ahead of ``now`` are dropped.
# Protects against bogus timestamps poisoning the window.
_MAX_DRIFT_SECONDS = 5


class SlidingWindow:
    __slots__ = ("max_age", "_buf")

    def __init__(self, max_age_seconds: float):
        self.max_age = max_age_seconds
        self._buf: deque[float] = deque()

    def add(self, timestamp: float, now: float | None = None) -> bool:
        """Record one hit. Returns False (and drops) if timestamp is bogus or already expired."""
        if now is None:
            now = time.time()
        if timestamp > now + _MAX_DRIFT_SECONDS:
            return False  # too far in the future
        if timestamp < now - self.max_age:
            return False  # already outside the window
        self._evict(now)
        self._buf.append(timestamp)
        return True

    def count(self, now: float) -> int:
        self._evict(now)
        return len(self._buf)

    def rate(self, now: float) -> float:
        """Hits per second over the full window length."""
        if self.max_age <= 0:
            return float(self.count(now))
        return self.count(now) / self.max_age

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        while self._buf and self._buf[0] < cutoff:
            self._buf.popleft()

    def __len__(self) -> int:
        return len(self._buf)
