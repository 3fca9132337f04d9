"""
Background upkeep for the tiered cache: expiry sweeps and optimization.
"""
import threading
import logging
import time
from typing import Any, Callable, Dict, Optional

from config.settings import settings

from .tiered import TieredCache

logger = logging.getLogger("cache.maintenance")


class CacheMaintenance:
    """
    Daemon thread that periodically sweeps and optimizes a TieredCache.

    - cleanup_expired() runs every cleanup_interval seconds
    - optimize() runs every optimize_interval seconds, but only when the
      cache holds more than optimize_min_entries entries
    """

    def __init__(
        self,
        cache: TieredCache,
        cleanup_interval: Optional[float] = None,
        optimize_interval: Optional[float] = None,
        optimize_min_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache
        self._cleanup_interval = (
            cleanup_interval if cleanup_interval is not None
            else settings.cache_cleanup_interval_seconds
        )
        self._optimize_interval = (
            optimize_interval if optimize_interval is not None
            else settings.cache_optimize_interval_seconds
        )
        self._optimize_min_entries = (
            optimize_min_entries if optimize_min_entries is not None
            else settings.cache_optimize_min_entries
        )
        self._clock = clock

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_cleanup = clock()
        self._last_optimize = clock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the maintenance thread (no-op if already running)."""
        if self._thread is not None:
            return

        self._stop_event.clear()
        self._last_cleanup = self._last_optimize = self._clock()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="cache-maintenance",
        )
        self._thread.start()
        logger.info("Cache maintenance started")

    def stop(self) -> None:
        """Stop the maintenance thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Cache maintenance stopped")

    def run_once(self, now: Optional[float] = None) -> Dict[str, Any]:
        """
        Run whichever tasks are due at `now`.

        Returns:
            {"swept": n | None, "optimized": {...} | None}
        """
        now = self._clock() if now is None else now
        result: Dict[str, Any] = {"swept": None, "optimized": None}

        if now - self._last_cleanup >= self._cleanup_interval:
            self._last_cleanup = now
            result["swept"] = self._cache.cleanup_expired()

        if now - self._last_optimize >= self._optimize_interval:
            self._last_optimize = now
            if len(self._cache) > self._optimize_min_entries:
                result["optimized"] = self._cache.optimize()

        return result

    def _loop(self) -> None:
        tick = min(self._cleanup_interval, self._optimize_interval)
        while not self._stop_event.wait(tick):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Cache maintenance error: {e}")
