"""In-memory rate limiter used to throttle repeated failed logins."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class InMemoryRateLimiter:
    """Sliding-window hit counter per key.

    `hit` records an event, `blocked` asks whether a key has used up its
    window without recording anything, and `reset` forgets a key (called
    after a successful login).
    """

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, key: str, window_seconds: int, now: float) -> deque:
        q = self._hits[key]
        cutoff = now - window_seconds
        while q and q[0] < cutoff:
            q.popleft()
        return q

    def blocked(self, key: str, max_hits: int, window_seconds: int) -> tuple[bool, int]:
        """Return `(blocked, retry_after_seconds)` for `key`."""
        now = time.monotonic()
        with self._lock:
            q = self._prune(key, window_seconds, now)
            if len(q) >= max_hits:
                return True, max(1, int(window_seconds - (now - q[0])))
        return False, 0

    def hit(self, key: str, window_seconds: int) -> None:
        now = time.monotonic()
        with self._lock:
            self._prune(key, window_seconds, now).append(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)
