"""Per-key sliding-window request limiter.

Evaluated before any pipeline work. Each key keeps the timestamps of its
admitted requests within the last window; a request is rejected with
``RateLimitExceeded`` once the window is full. A limit of zero disables
limiting entirely. Keys whose window has emptied are forgotten.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

WINDOW_S = 60.0


class RateLimitExceeded(Exception):
    """Raised when a key exceeds its request budget."""

    def __init__(self, key: str, retry_after_s: float) -> None:
        self.key = key
        self.retry_after_s = retry_after_s
        super().__init__(f"rate limit exceeded for {key!r}; retry after {retry_after_s:.1f}s")


class RateLimiter:
    """Thread-safe sliding-window limiter.

    Args:
        per_minute: Requests admitted per key per window; 0 disables.
        window_s: Window length in seconds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        per_minute: int,
        *,
        window_s: float = WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_minute = per_minute
        self.window_s = window_s
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.per_minute > 0

    def __len__(self) -> int:
        """Number of keys with at least one admitted request in the window."""
        with self._lock:
            return len(self._hits)

    def _prune(self, now: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_s]
        for key in stale:
            del self._hits[key]

    def check(self, key: str) -> None:
        """Admit one request for ``key``.

        Raises:
            RateLimitExceeded: If ``key`` already used its budget in the window.
        """
        if not self.enabled:
            return
        now = self._clock()
        with self._lock:
            self._prune(now)
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_s:
                hits.popleft()
            if len(hits) >= self.per_minute:
                retry_after = self.window_s - (now - hits[0])
                raise RateLimitExceeded(key, max(retry_after, 0.0))
            hits.append(now)

    def remaining(self, key: str) -> int | None:
        """Requests still admitted for ``key`` in the current window."""
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self.per_minute
            live = sum(1 for stamp in hits if now - stamp < self.window_s)
            return max(self.per_minute - live, 0)
