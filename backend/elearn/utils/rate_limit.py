"""In-memory rate limiter used to slow down login guessing."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by an arbitrary string (client + route)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Register a hit for `key`; return (allowed, retry_after_seconds)."""
        now = self._clock()
        with self._lock:
            q = self._hits[key]
            cutoff = now - window_seconds
            while q and q[0] <= cutoff:
                q.popleft()
            if len(q) >= max_requests:
                retry_after = max(1, int(window_seconds - (now - q[0])))
                return False, retry_after
            q.append(now)
        return True, 0

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
