"""
In-memory TTL cache, passed explicitly to the components that use it.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    valid_entries: int
    expired_entries: int
    hits: int
    misses: int


class TTLCache:
    """
    Thread-safe key/value cache with a fixed time-to-live per entry.

    The loader passed to get() runs outside the lock, so two threads missing the same key
    at once may both load it; the later write wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable, loader: Callable[[], Any] | None = None) -> Any:
        """Return the cached value, or load and cache it. Without a loader a miss returns None."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now < entry.expires_at:
                self._hits += 1
                return entry.value
            self._misses += 1
        if loader is None:
            return None
        value = loader()
        self.set(key, value)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds == 0:
            return
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("cache_invalidated", extra={"cache_key": str(key)})
        return removed

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info("cache_cleared", extra={"count": size})
        return size

    def stats(self) -> CacheStats:
        now = self._clock()
        with self._lock:
            valid = sum(1 for e in self._entries.values() if now < e.expires_at)
            return CacheStats(
                total_entries=len(self._entries),
                valid_entries=valid,
                expired_entries=len(self._entries) - valid,
                hits=self._hits,
                misses=self._misses,
            )
