"""Per-source cache with independent freshness windows."""

import time
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class CacheEntry:
    """Cache entry with value, fetch time and TTL."""

    def __init__(self, value: Any, ttl: int, fetched_at: Optional[float] = None):
        self.value = value
        self.ttl = ttl
        self.fetched_at = time.time() if fetched_at is None else fetched_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if cache entry has outlived its TTL."""
        now = time.time() if now is None else now
        return now - self.fetched_at >= self.ttl

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.fetched_at


class SourceCache:
    """Holds the last good value for one upstream source."""

    def __init__(self, name: str, ttl: int):
        self.name = name
        self.ttl = ttl
        self._entry: Optional[CacheEntry] = None

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    def is_stale(self, now: Optional[float] = None) -> bool:
        return self._entry is None or self._entry.is_expired(now)

    def get(self, now: Optional[float] = None) -> Optional[Any]:
        """Return the cached value if it is still fresh."""
        if self.is_stale(now):
            return None
        logger.debug("Cache hit: %s (age: %.1fs)", self.name, self._entry.age_seconds(now))
        return self._entry.value

    def store(self, value: Any, now: Optional[float] = None):
        self._entry = CacheEntry(value, self.ttl, fetched_at=now)
        logger.debug("Cache set: %s (ttl: %ds)", self.name, self.ttl)

    def invalidate(self):
        if self._entry is not None:
            logger.debug("Cache invalidated: %s", self.name)
        self._entry = None

    def stats(self, now: Optional[float] = None) -> dict:
        if self._entry is None:
            return {"source": self.name, "ttl": self.ttl, "cached": False}
        return {
            "source": self.name,
            "ttl": self.ttl,
            "cached": True,
            "age_seconds": round(self._entry.age_seconds(now), 1),
            "expired": self._entry.is_expired(now),
        }
