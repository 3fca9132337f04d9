"""
HTTP client with admission control, categorized errors and jittered
exponential backoff.
"""
import logging
import random
import time
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import RetryCallState, Retrying, stop_after_attempt

from config.settings import settings

from ..metrics import MetricsSink, NullMetricsSink, get_performance_monitor
from .backoff import RetryConfig, retry_if_retryable_category, wait_backoff_jitter
from .errors import ApiError, ErrorCategory, QuotaExceededError, categorize_exception, categorize_status
from .rate_limiter import AdmissionWindow

logger = logging.getLogger("resilience.client")


class RetryingClient:
    """
    Issues GET requests that return JSON.

    Per logical call:
    - Admission check against the rolling quota; rejection raises
      QuotaExceededError without touching the network or using an attempt
    - Up to max_attempts attempts, each recorded in the admission window
    - Non-2xx responses are classified by status, transport failures by
      exception type; only retryable categories are retried
    - Between attempts, sleep for the jittered exponential backoff delay
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        config: Optional[RetryConfig] = None,
        admission: Optional[AdmissionWindow] = None,
        metrics: Optional[MetricsSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        """
        Initialize the client.

        Args:
            session: requests session used for all calls
            config: Retry/backoff parameters
            admission: Rolling quota window
            metrics: Sink for per-attempt API events
            sleep: Called with the backoff delay in seconds
            timeout: Per-request timeout in seconds
            clock: Monotonic clock for durations
            rng: Uniform [0, 1) source for jitter
        """
        self._session = session or requests.Session()
        self._config = config or RetryConfig.from_settings()
        self._admission = admission or AdmissionWindow()
        self._metrics = metrics or NullMetricsSink()
        self._sleep = sleep
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._clock = clock
        self._rng = rng

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def admission(self) -> AdmissionWindow:
        return self._admission

    def execute(
        self,
        url: str,
        endpoint_tag: str = "unknown",
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Fetch `url` and return the decoded JSON body.

        Args:
            url: Absolute URL to GET
            endpoint_tag: Label used for logging and metrics
            params: Query parameters

        Returns:
            Parsed JSON response

        Raises:
            QuotaExceededError: If the rolling quota is used up
            ApiError: On a non-retryable failure or when attempts run out
        """
        # The first attempt is admitted and recorded here; retries record in _attempt
        if not self._admission.try_acquire():
            retry_after = self._admission.retry_after()
            self._metrics.record_api_request(
                0, False, endpoint_tag, ErrorCategory.QUOTA_EXCEEDED.value
            )
            logger.error(
                f"Quota exceeded for {endpoint_tag}: "
                f"{self._admission.max_requests} requests per {self._admission.window_seconds:.0f}s"
            )
            raise QuotaExceededError(
                "API rate limit exceeded. Please try again later.",
                retry_after=retry_after,
                url=url,
                endpoint=endpoint_tag,
            )

        started_at = self._clock()
        retryer = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_backoff_jitter(self._config, self._rng),
            retry=retry_if_retryable_category(self._config.max_attempts),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            for attempt in retryer:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    data = self._attempt(url, endpoint_tag, params, started_at, number)
                    if number > 1:
                        duration_ms = (self._clock() - started_at) * 1000
                        logger.info(
                            f"API request {endpoint_tag} succeeded on attempt {number} "
                            f"after {duration_ms:.0f}ms"
                        )
                    return data
        except ApiError as e:
            logger.error(f"API request {endpoint_tag} failed: {e!r}")
            raise

    def _attempt(
        self,
        url: str,
        endpoint_tag: str,
        params: Optional[Dict[str, Any]],
        started_at: float,
        number: int,
    ) -> Any:
        if number > 1:
            self._admission.record()

        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except Exception as e:
            # Connection and timeout errors are NETWORK_ERROR, anything else UNKNOWN_ERROR
            category = categorize_exception(e)
            self._record_failure(started_at, endpoint_tag, category)
            raise ApiError(
                category,
                f"API request failed: {e}",
                url=url,
                endpoint=endpoint_tag,
                attempts=number,
                cause=e,
            ) from e

        status = response.status_code
        if not 200 <= status < 300:
            category = categorize_status(status)
            self._record_failure(started_at, endpoint_tag, category)
            raise ApiError(
                category,
                f"API request failed: {status} {response.reason}",
                status_code=status,
                url=url,
                endpoint=endpoint_tag,
                attempts=number,
            )

        try:
            data = response.json()
        except ValueError as e:
            category = ErrorCategory.UNKNOWN_ERROR
            self._record_failure(started_at, endpoint_tag, category)
            raise ApiError(
                category,
                f"Invalid JSON from {endpoint_tag}: {e}",
                status_code=status,
                url=url,
                endpoint=endpoint_tag,
                attempts=number,
                cause=e,
            ) from e

        self._metrics.record_api_request(
            (self._clock() - started_at) * 1000, True, endpoint_tag
        )
        return data

    def _record_failure(self, started_at: float, endpoint_tag: str, category: ErrorCategory) -> None:
        duration_ms = (self._clock() - started_at) * 1000
        self._metrics.record_api_request(duration_ms, False, endpoint_tag, category.value)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"API request attempt {retry_state.attempt_number} failed ({error}). "
            f"Retrying in {delay * 1000:.0f}ms..."
        )

    def get_status(self) -> Dict[str, Any]:
        """Admission window and retry policy summary."""
        recent = self._admission.recent_count()
        return {
            "recent_requests": recent,
            "remaining_requests": max(0, self._admission.max_requests - recent),
            "max_requests": self._admission.max_requests,
            "window_seconds": self._admission.window_seconds,
            "can_make_request": recent < self._admission.max_requests,
            "retry": self._config.model_dump(),
        }


# Global client instance
_retrying_client: Optional[RetryingClient] = None


def get_retrying_client() -> RetryingClient:
    """Get or create the global client, reporting to the global performance monitor."""
    global _retrying_client
    if _retrying_client is None:
        _retrying_client = RetryingClient(metrics=get_performance_monitor())
    return _retrying_client
