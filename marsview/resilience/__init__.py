"""
Outbound call resilience: error taxonomy, backoff, admission control and the retrying client.
"""
from .errors import (
    ApiError,
    ErrorCategory,
    QuotaExceededError,
    categorize_exception,
    categorize_status,
)
from .backoff import (
    RetryConfig,
    compute_backoff_delay,
    should_retry,
    wait_backoff_jitter,
    retry_if_retryable_category,
)
from .rate_limiter import AdmissionWindow
from .retrying_client import RetryingClient, get_retrying_client

__all__ = [
    "ApiError",
    "ErrorCategory",
    "QuotaExceededError",
    "categorize_exception",
    "categorize_status",
    "RetryConfig",
    "compute_backoff_delay",
    "should_retry",
    "wait_backoff_jitter",
    "retry_if_retryable_category",
    "AdmissionWindow",
    "RetryingClient",
    "get_retrying_client",
]
