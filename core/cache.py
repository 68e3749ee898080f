"""
Small in-memory cache of favicon hashes.
"""
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional


@dataclass
class CacheEntry:
    """A single cache entry with expiration."""
    value: Any
    expires_at: datetime


class ResourceCache:
    """
    Bounded TTL cache keyed by resource URL.

    Values are favicon MD5 hex digests keyed by icon URL; targets sharing an
    icon URL (redirects to one host, CDN assets) fetch it only once. When
    full, the least recently used entry is evicted.
    """

    def __init__(self, default_ttl_seconds: int = 3600, max_entries: int = 100):
        """
        Args:
            default_ttl_seconds: Default time-to-live in seconds (default: 1 hour)
            max_entries: Capacity before least recently used entries are evicted
        """
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.default_ttl = default_ttl_seconds
        self.max_entries = max_entries

    def get(self, key: str) -> Optional[Any]:
        """The cached value, or None if missing or expired."""
        entry = self._cache.get(key)
        if entry is None:
            return None

        if datetime.now() > entry.expires_at:
            del self._cache[key]
            return None

        self._cache.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        self._cache[key] = CacheEntry(value=value, expires_at=datetime.now() + timedelta(seconds=ttl))
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

