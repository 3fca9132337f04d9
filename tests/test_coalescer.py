"""
Tests for RequestCoordinator: cache-aware single-flight fetching.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from marsview.cache.coalescer import RequestCoordinator
from marsview.cache.tiered import TieredCache


def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


class GatedFetcher:
    """Fetcher that blocks until released, counting invocations."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        self.started.set()
        assert self.release.wait(5), "fetcher never released"
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def cache(clock, monitor):
    return TieredCache(metrics=monitor, clock=clock)


@pytest.fixture
def coordinator(cache, clock):
    return RequestCoordinator(cache=cache, clock=clock)


def _resolve_concurrently(coordinator, key, fetcher, n):
    """Start n resolve() calls, release the fetcher once all have attached."""
    executor = ThreadPoolExecutor(max_workers=n)
    futures = [executor.submit(coordinator.resolve, key, fetcher)]
    assert fetcher.started.wait(5)
    futures += [executor.submit(coordinator.resolve, key, fetcher) for _ in range(n - 1)]
    wait_until(lambda: coordinator.waiters(key) == n - 1)
    fetcher.release.set()
    executor.shutdown(wait=True)
    return futures


# =============================================================================
# Cache interaction
# =============================================================================

class TestCacheInteraction:
    """resolve() consults and fills the cache."""

    def test_cached_value_skips_fetcher(self, coordinator, cache):
        cache.set("manifest_spirit", {"name": "Spirit"})
        calls = []
        result = coordinator.resolve("manifest_spirit", lambda: calls.append(1))
        assert result == {"name": "Spirit"}
        assert calls == []

    def test_miss_fetches_and_caches_with_key_tier(self, coordinator, cache, clock):
        result = coordinator.resolve("latest_spirit", lambda: ["photo"])
        assert result == ["photo"]
        entry = cache.get_entry("latest_spirit")
        assert entry.value == ["photo"]
        assert entry.expires_at == clock.now + 1800

    def test_cached_none_is_a_hit(self, coordinator, cache):
        cache.set("photos_empty", None)
        calls = []

        def fetch():
            calls.append(1)
            return "fetched"

        assert coordinator.resolve("photos_empty", fetch) is None
        assert calls == []

    def test_refetches_after_expiry(self, coordinator, clock):
        values = iter(["first", "second"])
        assert coordinator.resolve("status_x", lambda: next(values)) == "first"
        clock.advance(61)
        assert coordinator.resolve("status_x", lambda: next(values)) == "second"

    def test_use_cache_false_bypasses_cache(self, coordinator, cache):
        cache.set("photos_x", "stale")
        assert coordinator.resolve("photos_x", lambda: "fresh", use_cache=False) == "fresh"
        assert cache.get("photos_x") == "stale"


# =============================================================================
# Single-flight
# =============================================================================

class TestSingleFlight:
    """Concurrent callers share one fetch."""

    def test_five_concurrent_callers_share_one_fetch(self, coordinator):
        payload = {"photos": [{"id": 1}]}
        fetcher = GatedFetcher(result=payload)

        futures = _resolve_concurrently(coordinator, "photos_perseverance_500_all", fetcher, 5)

        assert fetcher.calls == 1
        results = [f.result() for f in futures]
        assert all(r is payload for r in results)
        assert coordinator.active_requests == 0

    def test_failure_reaches_every_waiter_and_is_not_cached(self, coordinator, cache):
        error = RuntimeError("upstream down")
        fetcher = GatedFetcher(error=error)

        futures = _resolve_concurrently(coordinator, "photos_x", fetcher, 4)

        assert fetcher.calls == 1
        for future in futures:
            assert future.exception() is error
        assert cache.get("photos_x") is None
        assert not coordinator.is_pending("photos_x")

    def test_base_exception_reaches_waiters_too(self, coordinator, cache):
        class FetchAborted(BaseException):
            pass

        error = FetchAborted()
        fetcher = GatedFetcher(error=error)

        futures = _resolve_concurrently(coordinator, "photos_x", fetcher, 3)

        assert fetcher.calls == 1
        for future in futures:
            assert future.exception() is error
        assert not cache.exists("photos_x")
        assert not coordinator.is_pending("photos_x")

    def test_call_after_failure_retries(self, coordinator):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("first try fails")
            return "ok"

        with pytest.raises(ConnectionError):
            coordinator.resolve("photos_x", flaky)
        assert coordinator.resolve("photos_x", flaky) == "ok"
        assert len(attempts) == 2

    def test_different_keys_fetch_independently(self, coordinator):
        a = GatedFetcher(result="a")
        b = GatedFetcher(result="b")
        with ThreadPoolExecutor(max_workers=2) as executor:
            fa = executor.submit(coordinator.resolve, "photos_a", a)
            fb = executor.submit(coordinator.resolve, "photos_b", b)
            assert a.started.wait(5) and b.started.wait(5)
            assert coordinator.active_requests == 2
            a.release.set()
            b.release.set()
        assert (fa.result(), fb.result()) == ("a", "b")

    def test_waiter_timeout(self, cache, clock):
        coordinator = RequestCoordinator(cache=cache, clock=clock, timeout=0.05)
        fetcher = GatedFetcher(result="late")
        with ThreadPoolExecutor(max_workers=2) as executor:
            first = executor.submit(coordinator.resolve, "photos_slow", fetcher)
            assert fetcher.started.wait(5)
            with pytest.raises(TimeoutError):
                coordinator.resolve("photos_slow", fetcher)
            fetcher.release.set()
        assert first.result() == "late"


# =============================================================================
# Stats
# =============================================================================

class TestStats:
    """Request statistics."""

    def test_counts_requests_and_errors(self, coordinator):
        def broken():
            raise ValueError("bad")

        coordinator.resolve("photos_a", lambda: 1)
        with pytest.raises(ValueError):
            coordinator.resolve("photos_b", broken)

        stats = coordinator.get_stats()
        assert stats["requests"] == 1
        assert stats["errors"] == 1
        assert stats["error_rate"] == 0.5
        assert stats["requests_last_hour"] == 1
        assert stats["active_requests"] == 0

    def test_history_rolls_off_after_an_hour(self, coordinator, clock):
        coordinator.resolve("photos_a", lambda: 1)
        clock.advance(3601)
        assert coordinator.get_stats()["requests_last_hour"] == 0
        assert coordinator.get_stats()["requests"] == 1
