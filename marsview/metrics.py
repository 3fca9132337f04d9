"""
Metrics sinks for cache and API events.

The cache and the HTTP client only ever talk to the MetricsSink
interface; dashboards read whatever the concrete sink aggregates.
"""
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Optional


class MetricsSink(ABC):
    """Receives cache hit/miss/eviction and API request events."""

    @abstractmethod
    def record_cache_hit(self) -> None:
        pass

    @abstractmethod
    def record_cache_miss(self) -> None:
        pass

    @abstractmethod
    def record_cache_eviction(self) -> None:
        pass

    @abstractmethod
    def record_api_request(
        self,
        duration_ms: float,
        success: bool,
        endpoint: str,
        error_category: Optional[str] = None,
    ) -> None:
        """
        Record one outbound API attempt.

        Args:
            duration_ms: Milliseconds since the logical call started
            success: True if the attempt returned a 2xx response
            endpoint: Endpoint tag supplied by the caller
            error_category: ErrorCategory value for failed attempts
        """
        pass


class NullMetricsSink(MetricsSink):
    """Discards all events."""

    def record_cache_hit(self) -> None:
        pass

    def record_cache_miss(self) -> None:
        pass

    def record_cache_eviction(self) -> None:
        pass

    def record_api_request(self, duration_ms, success, endpoint, error_category=None) -> None:
        pass


# Ring buffer sizes
RECENT_REQUESTS_LIMIT = 100
RECENT_ERRORS_LIMIT = 50


class PerformanceMonitor(MetricsSink):
    """
    In-memory counters for cache and API performance.

    Thread-safe; keeps the last 100 requests and last 50 errors.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._cache = {"hits": 0, "misses": 0, "evictions": 0}
            self._api = {"total": 0, "successful": 0, "failed": 0, "total_time_ms": 0.0}
            self._errors_by_category: Dict[str, int] = {}
            self._recent_requests: Deque[Dict[str, Any]] = deque(maxlen=RECENT_REQUESTS_LIMIT)
            self._recent_errors: Deque[Dict[str, Any]] = deque(maxlen=RECENT_ERRORS_LIMIT)

    def record_cache_hit(self) -> None:
        with self._lock:
            self._cache["hits"] += 1

    def record_cache_miss(self) -> None:
        with self._lock:
            self._cache["misses"] += 1

    def record_cache_eviction(self) -> None:
        with self._lock:
            self._cache["evictions"] += 1

    def record_api_request(self, duration_ms, success, endpoint, error_category=None) -> None:
        now = self._clock()
        with self._lock:
            self._api["total"] += 1
            self._api["total_time_ms"] += duration_ms
            if success:
                self._api["successful"] += 1
            else:
                self._api["failed"] += 1
                category = error_category or "UNKNOWN_ERROR"
                self._errors_by_category[category] = self._errors_by_category.get(category, 0) + 1
                self._recent_errors.append(
                    {"category": category, "endpoint": endpoint, "timestamp": now}
                )
            self._recent_requests.append({
                "timestamp": now,
                "duration_ms": duration_ms,
                "success": success,
                "endpoint": endpoint,
                "error_category": error_category,
            })

    @property
    def cache_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._cache)

    @property
    def api_counts(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._api)

    @property
    def errors_by_category(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._errors_by_category)

    def get_report(self) -> Dict[str, Any]:
        """Summary for the stats endpoint."""
        with self._lock:
            cache_total = self._cache["hits"] + self._cache["misses"]
            hit_rate = (self._cache["hits"] / cache_total * 100) if cache_total else 0
            api_total = self._api["total"]
            avg_ms = (self._api["total_time_ms"] / api_total) if api_total else 0
            error_rate = (self._api["failed"] / api_total) if api_total else 0
            return {
                "uptime_seconds": round(self._clock() - self._started_at, 1),
                "cache": {**self._cache, "hit_rate_percent": round(hit_rate, 1)},
                "api": {
                    "total": api_total,
                    "successful": self._api["successful"],
                    "failed": self._api["failed"],
                    "avg_duration_ms": round(avg_ms, 1),
                    "error_rate": round(error_rate, 3),
                },
                "errors": {
                    "by_category": dict(self._errors_by_category),
                    "recent": list(self._recent_errors),
                },
            }


# Global monitor shared by the cache and the API client
_performance_monitor: Optional[PerformanceMonitor] = None


def get_performance_monitor() -> PerformanceMonitor:
    """Get or create the global performance monitor."""
    global _performance_monitor
    if _performance_monitor is None:
        _performance_monitor = PerformanceMonitor()
    return _performance_monitor
