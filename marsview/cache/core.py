"""
Core cache data structures.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

# Fallback size when a payload cannot be serialised
DEFAULT_SIZE_ESTIMATE = 1000


class CacheTier(Enum):
    """Freshness tiers, each with its own TTL."""
    STATIC = "static"            # Manifests, rover info (1 hour)
    SEMI_STATIC = "semi_static"  # Photos by earth date, latest photos (30 minutes)
    DYNAMIC = "dynamic"          # Photos by sol, telemetry (5 minutes)
    REAL_TIME = "real_time"      # Rover status, live feeds (1 minute)


def estimate_size(value: Any) -> int:
    """Rough byte estimate of a payload (JSON length, two bytes per char)."""
    try:
        return len(json.dumps(value)) * 2
    except (TypeError, ValueError):
        return DEFAULT_SIZE_ESTIMATE


@dataclass
class CacheEntry:
    """
    A cached value with its tier, expiry and access bookkeeping.

    All timestamps are POSIX seconds taken from the owning cache's clock.
    The entry is logically absent once now > expires_at, even while it
    is still physically stored.
    """
    key: str
    value: Any
    created_at: float
    expires_at: float
    tier: CacheTier = CacheTier.DYNAMIC
    access_count: int = 0
    last_accessed_at: float = 0.0
    size_estimate: int = 0

    def __post_init__(self):
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"expires_at must be after created_at for {self.key!r}"
            )
        if not self.last_accessed_at:
            self.last_accessed_at = self.created_at
        if not self.size_estimate:
            self.size_estimate = estimate_size(self.value)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def age_seconds(self, now: float) -> float:
        return now - self.created_at

    @property
    def lifetime_seconds(self) -> float:
        """Current TTL span (grows when the entry is promoted)."""
        return self.expires_at - self.created_at

    def touch(self, now: float) -> None:
        """Record a read."""
        self.access_count += 1
        self.last_accessed_at = now

    def to_dict(self, now: float) -> Dict[str, Any]:
        """Debug view of the entry."""
        return {
            "key": self.key,
            "tier": self.tier.value,
            "age": round(self.age_seconds(now), 1),
            "ttl_remaining": round(max(0.0, self.expires_at - now), 1),
            "access_count": self.access_count,
            "size": self.size_estimate,
        }
