"""Error taxonomy for outbound API calls."""
from enum import Enum
from typing import Optional

import requests


class ErrorCategory(Enum):
    """Why an API call failed, and whether another attempt could help."""
    RATE_LIMIT = "RATE_LIMIT"
    AUTH_ERROR = "AUTH_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CLIENT_ERROR = "CLIENT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.NETWORK_ERROR,
    ErrorCategory.UNKNOWN_ERROR,
})


class ApiError(Exception):
    """Raised when an API call fails for good (not retryable, or retries exhausted)."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        endpoint: Optional[str] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.category = category
        self.message = message
        self.status_code = status_code
        self.url = url
        self.endpoint = endpoint
        self.attempts = attempts
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.category.retryable

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "message": self.message,
            "status_code": self.status_code,
            "endpoint": self.endpoint,
            "attempts": self.attempts,
        }

    def __repr__(self) -> str:
        return (
            f"ApiError({self.category.value}, status={self.status_code}, "
            f"attempts={self.attempts}, {self.message!r})"
        )


class QuotaExceededError(ApiError):
    """Raised before any network I/O when the hourly request quota is used up."""

    def __init__(self, message: str, retry_after: Optional[int] = None, **kwargs):
        super().__init__(ErrorCategory.QUOTA_EXCEEDED, message, **kwargs)
        self.retry_after = retry_after


def categorize_status(status_code: int) -> ErrorCategory:
    """
    Classify a non-2xx HTTP status.

    429 is checked first so it never falls into the generic 4xx bucket.
    """
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if status_code == 403:
        return ErrorCategory.AUTH_ERROR
    if status_code == 404:
        return ErrorCategory.NOT_FOUND
    if 400 <= status_code < 500:
        return ErrorCategory.CLIENT_ERROR
    if 500 <= status_code < 600:
        return ErrorCategory.SERVER_ERROR
    return ErrorCategory.UNKNOWN_ERROR


def categorize_exception(exc: BaseException) -> ErrorCategory:
    """Classify an exception raised while performing the request."""
    if isinstance(exc, ApiError):
        return exc.category
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.NETWORK_ERROR
    return ErrorCategory.UNKNOWN_ERROR
