"""
Exponential backoff with symmetric jitter, plus the tenacity strategies
that drive the retry loop.
"""
import random
from typing import Callable

from pydantic import BaseModel, Field
from tenacity import RetryCallState
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from config.settings import settings

from .errors import ErrorCategory, categorize_exception


class RetryConfig(BaseModel):
    """Retry/backoff parameters. Delays are in seconds."""

    max_attempts: int = Field(default=4, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: bool = True
    jitter_fraction: float = Field(default=0.1, ge=0, le=1)

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
            jitter_fraction=settings.retry_jitter_fraction,
        )

    @property
    def delay_ceiling(self) -> float:
        """Largest delay compute_backoff_delay can ever return."""
        if not self.jitter:
            return self.max_delay
        return self.max_delay * (1 + self.jitter_fraction)


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay to sleep after failed attempt number `attempt` (1-based).

    delay = min(base_delay * multiplier ** (attempt - 1), max_delay),
    then perturbed by up to +/- jitter_fraction of itself, floored at 0.
    """
    if attempt < 1:
        raise ValueError(f"attempt is 1-based, got {attempt}")

    capped = min(config.base_delay * config.multiplier ** (attempt - 1), config.max_delay)
    if not config.jitter:
        return capped

    spread = capped * config.jitter_fraction
    offset = (rng() - 0.5) * 2 * spread
    return max(0.0, capped + offset)


def should_retry(category: ErrorCategory, attempt: int, max_attempts: int) -> bool:
    """True if a failure of `category` on `attempt` earns another attempt."""
    return category.retryable and attempt < max_attempts


class wait_backoff_jitter(wait_base):
    """Tenacity wait strategy backed by compute_backoff_delay."""

    def __init__(self, config: RetryConfig, rng: Callable[[], float] = random.random):
        self.config = config
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff_delay(retry_state.attempt_number, self.config, self.rng)


class retry_if_retryable_category(retry_base):
    """Tenacity retry predicate: retry only retryable error categories."""

    def __init__(self, max_attempts: int):
        self.max_attempts = max_attempts

    def __call__(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        category = categorize_exception(outcome.exception())
        return should_retry(category, retry_state.attempt_number, self.max_attempts)
