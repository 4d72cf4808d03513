"""Bounded TTL response cache.

Repaired responses are cached in memory, keyed by the hash of the
normalized request input (``canonical.request_hash``). Entries expire
after ``ttl_s`` seconds and the least recently used entry is evicted once
``max_entries`` is reached. Stored payloads are deep-copied on the way in
and on the way out, so a caller mutating a returned graph cannot corrupt
the cache.

The cache is the only state shared across requests; all access goes
through one ``threading.Lock``.

Usage:
    >>> cache = ResponseCache(ttl_s=900, max_entries=256)
    >>> key = request_hash(graph, violations, brief)
    >>> cached = cache.get(key)
    >>> if cached is None:
    ...     response = run_pipeline(...)
    ...     cache.put(key, response)
"""

from __future__ import annotations

import copy
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


class CacheError(Exception):
    """Raised when cache operations fail."""


@dataclass(frozen=True)
class CacheStats:
    """Statistics for cache usage."""

    hits: int
    misses: int
    entries: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        """Return cache hit rate as a percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": self.entries,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
        }


class ResponseCache:
    """Thread-safe in-memory LRU cache with per-entry expiry.

    Args:
        ttl_s: Lifetime of an entry in seconds. Must be positive.
        max_entries: Capacity before least-recently-used eviction.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        *,
        ttl_s: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_s <= 0:
            raise CacheError(f"ttl_s must be positive, got {ttl_s}")
        if max_entries < 1:
            raise CacheError(f"max_entries must be >= 1, got {max_entries}")
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: str) -> Any | None:
        """Return a copy of the cached value, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(value)

    def put(self, key: str, value: Any) -> None:
        stored = copy.deepcopy(value)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = (self._clock() + self.ttl_s, stored)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and self._clock() < entry[0]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                entries=len(self._entries),
                evictions=self._evictions,
                expirations=self._expirations,
            )
