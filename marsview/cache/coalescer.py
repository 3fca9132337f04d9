"""
Cache-aware request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same key, only one
upstream call is made and all requesters share the result.
"""
import threading
import time
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple
from dataclasses import dataclass, field

from config.settings import settings

from .tiered import TieredCache, get_tiered_cache

logger = logging.getLogger("cache.coalescer")

# Sentinel so that a cached None is still a hit
MISSING = object()

# Request latency history kept for requests-per-hour stats
REQUEST_HISTORY_SECONDS = 3600


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoordinator:
    """
    Single-flight, cache-aware execution of fetch functions.

    Pattern:
    - A fresh cache entry is returned without calling the fetcher
    - First request for an uncached key initiates the fetch
    - Subsequent requests for the same key wait on the Event
    - On success the result is cached before waiters are released
    - On failure every waiter re-raises the same exception; nothing is cached

    Usage:
        coordinator = RequestCoordinator(cache)
        manifest = coordinator.resolve(
            "manifest_perseverance",
            lambda: client.execute(url, "manifest_perseverance"),
        )
    """

    def __init__(
        self,
        cache: Optional[TieredCache] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the coordinator.

        Args:
            cache: Cache consulted before fetching and filled after
            timeout: Max seconds a waiter blocks on an in-flight request (None = no limit)
            clock: Source of timestamps for request stats
        """
        self._cache = cache if cache is not None else get_tiered_cache()
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._clock = clock

        self._stats = {"requests": 0, "errors": 0, "total_request_time": 0.0}
        self._history: Deque[Tuple[float, float]] = deque()

    @property
    def cache(self) -> TieredCache:
        return self._cache

    def resolve(
        self,
        key: str,
        fetcher: Callable[[], Any],
        use_cache: bool = True,
    ) -> Any:
        """
        Return the cached value for `key`, or join/initiate a fetch.

        Args:
            key: Cache key (its prefix decides the TTL tier)
            fetcher: Zero-argument function producing the value
            use_cache: False to coalesce without reading or writing the cache

        Returns:
            The value (the same object for all concurrent callers)

        Raises:
            TimeoutError: If waiting for an in-flight request times out
            Exception: Any error from fetcher is propagated to every waiter
        """
        with self._lock:
            if use_cache:
                cached = self._cache.get(key, MISSING)
                if cached is not MISSING:
                    return cached

            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                # Join existing request
                in_flight.waiter_count += 1
                logger.debug(
                    f"Coalescing request for {key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
                is_initiator = False
            else:
                # Start new request
                in_flight = InFlightRequest(started_at=self._clock())
                self._in_flight[key] = in_flight
                is_initiator = True
                logger.debug(f"Initiating fetch for {key}")

        if is_initiator:
            return self._fetch(key, in_flight, fetcher, use_cache)
        return self._wait(key, in_flight)

    def _fetch(
        self,
        key: str,
        in_flight: InFlightRequest,
        fetcher: Callable[[], Any],
        use_cache: bool,
    ) -> Any:
        try:
            result = fetcher()
            if use_cache:
                self._cache.set(key, result)
            in_flight.result = result
            self._record_request(in_flight.started_at, key)
        except BaseException as e:
            in_flight.error = e
            with self._lock:
                self._stats["errors"] += 1
            logger.warning(f"Fetch failed for {key}: {e}")
        finally:
            # Clean up before signalling so late arrivals hit the cache
            with self._lock:
                if self._in_flight.get(key) is in_flight:
                    del self._in_flight[key]
            in_flight.event.set()

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    def _wait(self, key: str, in_flight: InFlightRequest) -> Any:
        completed = in_flight.event.wait(timeout=self._timeout)

        if not completed:
            logger.error(f"Timeout waiting for coalesced request: {key}")
            raise TimeoutError(f"Request for {key} timed out after {self._timeout}s")

        if in_flight.error is not None:
            raise in_flight.error

        return in_flight.result

    def _record_request(self, started_at: float, key: str) -> None:
        now = self._clock()
        duration = now - started_at
        with self._lock:
            self._stats["requests"] += 1
            self._stats["total_request_time"] += duration
            self._history.append((now, duration))
            self._prune_history(now)
        logger.debug(f"Fetched {key} in {duration * 1000:.0f}ms")

    def _prune_history(self, now: float) -> None:
        cutoff = now - REQUEST_HISTORY_SECONDS
        while self._history and self._history[0][0] <= cutoff:
            self._history.popleft()

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def waiters(self, key: str) -> int:
        """Callers attached to the in-flight request for `key`, excluding the initiator."""
        with self._lock:
            in_flight = self._in_flight.get(key)
            return in_flight.waiter_count if in_flight else 0

    def clear_pending(self) -> int:
        """
        Forget all in-flight cells.

        Waiters already attached still receive their result; new callers
        start a fresh fetch.
        """
        with self._lock:
            count = len(self._in_flight)
            self._in_flight.clear()
            return count

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        now = self._clock()
        with self._lock:
            self._prune_history(now)
            requests = self._stats["requests"]
            errors = self._stats["errors"]
            attempts = requests + errors
            recent = list(self._history)
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "requests": requests,
                "errors": errors,
                "avg_request_ms": round(self._stats["total_request_time"] / requests * 1000)
                if requests else 0,
                "error_rate": round(errors / attempts, 3) if attempts else 0,
                "requests_last_hour": len(recent),
                "avg_latency_last_hour_ms": round(sum(d for _, d in recent) / len(recent) * 1000)
                if recent else 0,
            }


# Global coordinator instance
_request_coordinator: Optional[RequestCoordinator] = None


def get_request_coordinator() -> RequestCoordinator:
    """Get or create the global request coordinator (backed by the global cache)."""
    global _request_coordinator
    if _request_coordinator is None:
        _request_coordinator = RequestCoordinator(
            cache=get_tiered_cache(),
            timeout=settings.coalesce_timeout_seconds,
        )
    return _request_coordinator
