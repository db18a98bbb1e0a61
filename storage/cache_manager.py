"""
Cache Manager Module

In-memory cache for expensive derived results (health scores, trends,
forecasts), supporting per-entry TTL and access statistics.

Author: GG
Date: 2025-09-16
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from config.logging_config import cache_lookups_total, cache_size_gauge
from models.data_models import CacheEntry
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


def health_score_key(location_id: str) -> str:
    return f"health_score_{location_id}"


def trends_key(location_id: str) -> str:
    return f"trends_{location_id}"


def forecast_key(location_id: str, metric_type: str, period: int) -> str:
    return f"forecast_{location_id}_{metric_type}_{period}"


class CacheManager:
    """
    Thread-safe TTL cache manager.

    Entries are never returned once expired; they are purged lazily on
    read and in bulk by clear_expired(). There is no capacity bound.
    """

    def __init__(self, ttl_seconds: float = 3600, clock: Optional[Callable[[], datetime]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or utc_now
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """
        Get value by key.

        Args:
            key: Cache key.

        Returns:
            Cached value or None on a miss.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                cache_lookups_total.labels(result='miss').inc()
                return None

            if entry.is_expired(now):
                del self._entries[key]
                self.misses += 1
                cache_lookups_total.labels(result='expired').inc()
                cache_size_gauge.set(len(self._entries))
                logger.debug(f"Cache expired: {key}")
                return None

            entry.last_accessed_at = now
            entry.access_count += 1
            self.hits += 1
            cache_lookups_total.labels(result='hit').inc()
            return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """
        Snapshot of an entry's metadata without counting an access.

        Expired entries are reported as missing but left for the purge.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                return None
            return entry.model_copy()

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """
        Set key to value, overwriting any existing entry.

        Args:
            key: Cache key.
            value: Value to cache.
            ttl_seconds: Time to live; defaults to the manager TTL.
        """
        now = self._clock()
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(
            key=key,
            value=value,
            expires_at=now + timedelta(seconds=ttl),
            last_accessed_at=now,
            access_count=0,
        )
        with self._lock:
            self._entries[key] = entry
            cache_size_gauge.set(len(self._entries))
        logger.debug(f"Cache set: {key} (ttl={ttl}s)")

    def delete(self, key: str) -> bool:
        """
        Delete a key from cache.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            cache_size_gauge.set(len(self._entries))
        if removed:
            logger.debug(f"Cache deleted: {key}")
        return removed

    def clear_expired(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            cache_size_gauge.set(len(self._entries))
        if expired:
            logger.info(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            cache_size_gauge.set(0)

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
            }

    def health_check(self) -> dict:
        """
        Health check for the cache store.

        Returns:
            Health status dict.
        """
        return {"status": "healthy", **self.stats()}
