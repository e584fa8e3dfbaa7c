"""TTL cache for fetched package metadata."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from constants import Constants


@dataclass
class CacheEntry:
    """A single cache entry with TTL."""

    value: bytes
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


class MetadataCache:
    """TTL cache for serialized candidate metadata.

    Read-shared by concurrent fetch threads. Content for a given pin is
    immutable, so concurrent writes of one key are idempotent; the lock only
    protects the dictionary itself.
    """

    def __init__(self, default_ttl: Optional[int] = None, max_entries: Optional[int] = None):
        """Initialize the metadata cache.

        Args:
            default_ttl: Time-to-live in seconds.
            max_entries: Entry bound before the oldest tenth is evicted.
        """
        self._default_ttl = default_ttl if default_ttl is not None else Constants.METADATA_CACHE_TTL_SEC
        self._max_entries = max_entries if max_entries is not None else Constants.METADATA_CACHE_MAX_ENTRIES
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[bytes]:
        """Get a cached value, or None if missing or expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired():
                del self._cache[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def put(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        """Store a value; an existing live entry for the key is kept."""
        effective_ttl = ttl if ttl is not None else self._default_ttl
        with self._lock:
            existing = self._cache.get(key)
            if existing is not None and not existing.is_expired():
                return
            self._cache[key] = CacheEntry(value=value, expires_at=time.time() + effective_ttl)
            if len(self._cache) > self._max_entries:
                self._evict_oldest(max(1, self._max_entries // 10))

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            expired_count = sum(1 for e in self._cache.values() if e.is_expired())
            return {
                "total_entries": len(self._cache),
                "expired_entries": expired_count,
                "hits": self.hits,
                "misses": self.misses,
                "max_entries": self._max_entries,
                "default_ttl": self._default_ttl,
            }

    def _evict_oldest(self, count: int) -> None:
        """Evict the oldest entries. Caller holds the lock."""
        sorted_keys = sorted(self._cache, key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[:count]:
            del self._cache[key]
