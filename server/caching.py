"""Query result caching for DocScout.

Holds intelligent-retrieval results keyed by normalized query, limit and job
scope. Entries expire after a TTL (checked on read); at capacity the entry with
the lowest ``last_access + hits * hit_weight`` score is evicted first.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from observability.metrics import cache_evictions, record_cache_lookup

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100
DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_HIT_WEIGHT_SECONDS = 60.0


def normalize_query(query: str) -> str:
    return " ".join((query or "").lower().split())


class CacheKey:
    """Utility class for generating consistent cache keys."""

    @staticmethod
    def query_result(query: str, limit: int, job_ids: Optional[Iterable[str]] = None) -> str:
        """Generate cache key for an intelligent-retrieval result."""
        key_data = {
            'query': normalize_query(query),
            'limit': limit,
            'jobs': sorted(set(job_ids)) if job_ids else [],
        }
        key_string = json.dumps(key_data, sort_keys=True)
        return f"query:{hashlib.md5(key_string.encode()).hexdigest()}"


@dataclass
class CacheEntry:
    key: str
    value: Any
    query: str
    created_at: float
    last_access: float
    hits: int = 0

    def eviction_score(self, hit_weight: float) -> float:
        return self.last_access + self.hits * hit_weight


class QueryCache:
    """In-memory TTL cache with a recency/frequency eviction policy."""

    def __init__(self,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 hit_weight_seconds: float = DEFAULT_HIT_WEIGHT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.hit_weight_seconds = hit_weight_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        """Get a value, refreshing its hit counter. Expired entries are dropped."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and self._is_expired(entry, now):
                del self._entries[key]
                cache_evictions.labels(reason="expired").inc()
                entry = None

            if entry is None:
                self.misses += 1
                record_cache_lookup(False)
                return None

            entry.hits += 1
            entry.last_access = now
            self.hits += 1
            record_cache_lookup(True)
            return entry.value

    def set(self, key: str, value: Any, query: str = "") -> None:
        """Set a value, evicting the lowest-scored entry when at capacity."""
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_one()

            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                query=normalize_query(query),
                created_at=now,
                last_access=now,
            )

    def _evict_one(self) -> None:
        victim = min(self._entries.values(), key=lambda entry: entry.eviction_score(self.hit_weight_seconds))
        del self._entries[victim.key]
        cache_evictions.labels(reason="capacity").inc()
        logger.debug(f"Evicted cache entry for query '{victim.query}' ({victim.hits} hits)")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._entries.clear()
        logger.info("Query cache cleared")

    def cleanup_expired(self) -> int:
        """Remove expired entries and return count."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            cache_evictions.labels(reason="expired").inc(len(expired))
        return len(expired)

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            now = self._clock()
            total = self.hits + self.misses
            entries: List[Dict[str, Any]] = [
                {
                    'query': entry.query,
                    'hits': entry.hits,
                    'age_seconds': round(now - entry.created_at, 3),
                }
                for entry in self._entries.values()
            ]
            return {
                'size': len(self._entries),
                'capacity': self.max_entries,
                'ttl_seconds': self.ttl_seconds,
                'hits': self.hits,
                'misses': self.misses,
                'hit_rate': self.hits / total if total else 0.0,
                'entries': entries,
            }
