"""Admission control: rolling request-count window for the upstream quota."""

from collections import deque
from threading import Lock
from time import time
from typing import Callable, Deque, Optional

from config.settings import settings


class AdmissionWindow:
    """
    Sliding window of outbound request timestamps.

    Limits to `max_requests` within the trailing `window_seconds`
    (NASA's default: 1000 per hour). Old timestamps are pruned lazily
    on every check. Thread-safe implementation.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time,
    ):
        self.max_requests = max_requests if max_requests is not None else settings.requests_per_hour
        self.window_seconds = (
            window_seconds if window_seconds is not None else settings.admission_window_seconds
        )
        self._clock = clock
        self._requests: Deque[float] = deque()
        self._lock = Lock()

    def _prune(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self._requests and self._requests[0] <= window_start:
            self._requests.popleft()

    def check(self) -> bool:
        """
        Check whether another request fits in the window.

        Does not record anything; use try_acquire() to admit a request.
        """
        now = self._clock()
        with self._lock:
            self._prune(now)
            return len(self._requests) < self.max_requests

    def try_acquire(self) -> bool:
        """
        Admit one request if the window has room.

        Prune, compare and record happen under one lock, so concurrent
        callers can never overshoot max_requests.

        Returns:
            True if admitted (and recorded), False if the quota is used up
        """
        now = self._clock()
        with self._lock:
            self._prune(now)
            if len(self._requests) >= self.max_requests:
                return False
            self._requests.append(now)
            return True

    def record(self) -> None:
        """Record an outbound request at the current time, without a quota check."""
        now = self._clock()
        with self._lock:
            self._requests.append(now)

    def recent_count(self) -> int:
        """Number of requests within the trailing window."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            return len(self._requests)

    def remaining(self) -> int:
        """Requests still allowed in the current window."""
        return max(0, self.max_requests - self.recent_count())

    def retry_after(self) -> Optional[int]:
        """
        Seconds until the oldest request leaves the window.

        None when the window has room.
        """
        now = self._clock()
        with self._lock:
            self._prune(now)
            if len(self._requests) < self.max_requests:
                return None
            oldest_in_window = self._requests[0]
            return max(1, int(oldest_in_window + self.window_seconds - now) + 1)

    def reset(self) -> None:
        """
        Forget all recorded requests.

        Useful for testing or admin override.
        """
        with self._lock:
            self._requests.clear()
