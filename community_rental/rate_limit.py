"""Request throttling collaborator.

``SlidingWindowRateLimiter`` keeps a per-key list of hit times and forgets
them after ``window_seconds``. A key whose hits have all expired is dropped,
so memory follows the number of recently active users. An instance is
created per application and handed to the routes that need it, so tests and
deployments can swap in a shared store.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Protocol


class RateLimiter(Protocol):
    def hit(self, key: str) -> bool:
        """Record a request for ``key``; return False if it is over the limit."""
        ...


class SlidingWindowRateLimiter:
    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def hit(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits.get(key)
            if hits is None:
                hits = self._hits[key] = deque()
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def _sweep(self, cutoff: float) -> None:
        # Hits are appended in order, so the newest is last.
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
