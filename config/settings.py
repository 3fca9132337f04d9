"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # NASA Mars Photos API configuration
    nasa_api_key: str = "DEMO_KEY"
    nasa_base_url: str = "https://api.nasa.gov/mars-photos/api/v1"
    request_timeout_seconds: float = 30.0

    # Cache settings
    cache_enabled: bool = True
    cache_max_entries: int = 1000
    cache_eviction_fraction: float = 0.1
    cache_promotion_threshold: int = 10
    cache_promotion_factor: float = 1.5

    # Cache maintenance
    cache_cleanup_interval_seconds: float = 60.0
    cache_optimize_interval_seconds: float = 300.0
    cache_optimize_min_entries: int = 100

    # Admission control (NASA API hourly quota)
    requests_per_hour: int = 1000
    admission_window_seconds: float = 3600.0

    # Retry / backoff
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter: bool = True
    retry_jitter_fraction: float = 0.1

    # Max seconds a coalesced waiter blocks; None waits for the fetch to settle
    coalesce_timeout_seconds: Optional[float] = None

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
