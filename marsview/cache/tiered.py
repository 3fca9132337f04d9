"""
Tiered in-memory cache with per-key TTL classification.
"""
import re
import threading
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Union

from config.settings import settings

from ..metrics import MetricsSink, NullMetricsSink, get_performance_monitor
from .core import CacheEntry, CacheTier
from .ttl_policies import TierClassifier

logger = logging.getLogger("cache.tiered")

Matcher = Union[str, Pattern[str]]


def _key_matches(matcher: Matcher, key: str) -> bool:
    if isinstance(matcher, str):
        return matcher in key
    return matcher.search(key) is not None


class TieredCache:
    """
    Key/value store where each key's TTL comes from its tier.

    - Tier is inferred from the key prefix by an injected TierClassifier
    - Expired entries are dropped lazily on read (miss + eviction) or by sweep
    - Soft capacity cap: overflowing evicts the least-recently-accessed slice
    - optimize() drops never-read entries and extends hot ones
    - Thread-safe via a single re-entrant lock around the entry map
    """

    def __init__(
        self,
        classifier: Optional[TierClassifier] = None,
        metrics: Optional[MetricsSink] = None,
        max_entries: Optional[int] = None,
        eviction_fraction: Optional[float] = None,
        promotion_threshold: Optional[int] = None,
        promotion_factor: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            classifier: Key-to-tier rules (defaults to the standard prefix table)
            metrics: Sink for hit/miss/eviction events
            max_entries: Soft cap on entry count
            eviction_fraction: Share of max_entries evicted when the cap is exceeded
            promotion_threshold: Reads needed before optimize() extends an entry
            promotion_factor: Multiplier applied to an entry's lifetime on promotion
            clock: Source of POSIX timestamps
        """
        self._classifier = classifier or TierClassifier()
        self._metrics = metrics or NullMetricsSink()
        self._max_entries = max_entries if max_entries is not None else settings.cache_max_entries
        self._eviction_fraction = (
            eviction_fraction if eviction_fraction is not None else settings.cache_eviction_fraction
        )
        self._promotion_threshold = (
            promotion_threshold if promotion_threshold is not None
            else settings.cache_promotion_threshold
        )
        self._promotion_factor = (
            promotion_factor if promotion_factor is not None else settings.cache_promotion_factor
        )
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    @property
    def classifier(self) -> TierClassifier:
        return self._classifier

    @property
    def metrics(self) -> MetricsSink:
        return self._metrics

    def classify(self, key: str) -> CacheTier:
        return self._classifier.classify(key)

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """
        Return the cached value, or `default` on a miss.

        An expired entry is deleted here and counted as a miss plus an eviction.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)

            if entry is None:
                self._stats["misses"] += 1
                self._metrics.record_cache_miss()
                logger.info(f"CACHE MISS: {key}")
                return default

            if entry.is_expired(now):
                del self._entries[key]
                self._stats["misses"] += 1
                self._stats["evictions"] += 1
                self._metrics.record_cache_miss()
                self._metrics.record_cache_eviction()
                logger.info(f"CACHE EXPIRED: {key} [age={entry.age_seconds(now):.1f}s]")
                return default

            entry.touch(now)
            self._stats["hits"] += 1
            self._metrics.record_cache_hit()
            logger.debug(f"CACHE HIT: {key} [tier={entry.tier.value}]")
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key; its prefix picks the tier
            value: Payload to cache
            ttl: Seconds to live, overriding the tier duration
        """
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        tier = self._classifier.classify(key)
        duration = ttl if ttl is not None else self._classifier.duration_for(tier)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + duration,
            tier=tier,
        )
        with self._lock:
            self._entries[key] = entry
            self._enforce_capacity()

    def delete(self, key: str) -> bool:
        """Remove one entry. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        """True if an unexpired entry is stored. Does not count as a read."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(now)

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Look up several keys; misses map to None."""
        return {key: self.get(key) for key in keys}

    def set_many(self, items: Iterable[Sequence[Any]]) -> List[Dict[str, Any]]:
        """
        Store several entries.

        Args:
            items: (key, value) or (key, value, ttl) tuples

        Returns:
            One {"key", "success"} result per item
        """
        results = []
        for item in items:
            key, value = item[0], item[1]
            ttl = item[2] if len(item) > 2 else None
            self.set(key, value, ttl)
            results.append({"key": key, "success": True})
        return results

    def warm(self, keys: Iterable[str], loader: Callable[[str], Any]) -> List[Dict[str, Any]]:
        """
        Pre-populate keys that are not already cached.

        Loader failures are reported per key and never cached.
        """
        results = []
        for key in keys:
            if self.exists(key):
                results.append({"key": key, "success": True, "cached": True})
                continue
            try:
                self.set(key, loader(key))
                results.append({"key": key, "success": True})
            except Exception as e:
                logger.warning(f"Cache warm failed for {key}: {e}")
                results.append({"key": key, "success": False, "error": str(e)})
        return results

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, matcher: Matcher) -> int:
        """
        Invalidate all entries whose key matches.

        Args:
            matcher: Substring to look for in keys, or a compiled regex (search)

        Returns:
            Number of entries invalidated
        """
        if not isinstance(matcher, (str, re.Pattern)):
            raise TypeError(f"matcher must be str or re.Pattern, not {type(matcher).__name__}")

        with self._lock:
            to_delete = [key for key in self._entries if _key_matches(matcher, key)]
            for key in to_delete:
                del self._entries[key]
        if to_delete:
            pattern = matcher if isinstance(matcher, str) else matcher.pattern
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def clear(self, pattern: Optional[Matcher] = None) -> int:
        """
        Clear all entries, or only those matching `pattern`.

        Returns:
            Number of entries removed
        """
        if pattern is not None:
            return self.invalidate(pattern)
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Physically remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    def optimize(self) -> Dict[str, int]:
        """
        Drop cold entries and extend hot ones.

        - Never-read entries older than twice their tier TTL are removed
        - Entries read more than promotion_threshold times get their lifetime
          multiplied by promotion_factor, capped at the STATIC tier duration
          from now; REAL_TIME entries are capped at their own tier duration
          from now

        Returns:
            {"removed": n, "promoted": n}
        """
        now = self._clock()
        removed = 0
        promoted = 0
        static_ceiling = now + self._classifier.duration_for(CacheTier.STATIC)

        with self._lock:
            for key, entry in list(self._entries.items()):
                tier_ttl = self._classifier.duration_for(entry.tier)

                if entry.access_count == 0 and entry.age_seconds(now) > 2 * tier_ttl:
                    del self._entries[key]
                    removed += 1
                    continue

                if entry.access_count > self._promotion_threshold and entry.tier != CacheTier.STATIC:
                    candidate = now + entry.lifetime_seconds * self._promotion_factor
                    if entry.tier == CacheTier.REAL_TIME:
                        ceiling = now + tier_ttl
                    else:
                        ceiling = static_ceiling
                    new_expires = min(candidate, ceiling)
                    if new_expires > entry.expires_at:
                        entry.expires_at = new_expires
                        promoted += 1

        if removed or promoted:
            logger.info(f"Cache optimized: removed={removed} promoted={promoted}")
        return {"removed": removed, "promoted": promoted}

    def _enforce_capacity(self) -> None:
        """Evict the least-recently-accessed slice once over the soft cap."""
        if len(self._entries) <= self._max_entries:
            return
        count = max(1, int(self._max_entries * self._eviction_fraction))
        oldest = sorted(self._entries.values(), key=lambda e: e.last_accessed_at)[:count]
        for entry in oldest:
            del self._entries[entry.key]
            self._stats["evictions"] += 1
            self._metrics.record_cache_eviction()
        logger.info(f"Capacity exceeded ({self._max_entries}); evicted {len(oldest)} entries")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry (expired or not), for inspection only."""
        with self._lock:
            return self._entries.get(key)

    def total_size(self) -> int:
        with self._lock:
            return sum(entry.size_estimate for entry in self._entries.values())

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = (self._stats["hits"] / total * 100) if total > 0 else 0
            return {
                "entries": len(self._entries),
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "evictions": self._stats["evictions"],
                "hit_rate_percent": round(hit_rate, 1),
                "total_size_bytes": sum(e.size_estimate for e in self._entries.values()),
                "max_entries": self._max_entries,
            }

    def get_debug_info(self) -> Dict[str, Any]:
        """Per-entry dump plus tier table and stats."""
        now = self._clock()
        with self._lock:
            entries = [entry.to_dict(now) for entry in self._entries.values()]
        return {
            "entries": entries,
            "tiers": self._classifier.describe(),
            "stats": self.get_stats(),
        }


# Global cache instance
_tiered_cache: Optional[TieredCache] = None


def get_tiered_cache() -> TieredCache:
    """Get or create the global cache, reporting to the global performance monitor."""
    global _tiered_cache
    if _tiered_cache is None:
        _tiered_cache = TieredCache(metrics=get_performance_monitor())
    return _tiered_cache
