"""
Tiered caching with TTL classification, single-flight fetches and background upkeep.
"""
from .core import CacheEntry, CacheTier, estimate_size
from .ttl_policies import (
    TTL_CONFIG,
    DEFAULT_TIER_RULES,
    TierRule,
    TierClassifier,
    get_ttl_for_tier,
    get_tier_for_key,
)
from .tiered import TieredCache, get_tiered_cache
from .coalescer import RequestCoordinator, get_request_coordinator
from .maintenance import CacheMaintenance

__all__ = [
    # Core types
    "CacheEntry",
    "CacheTier",
    "estimate_size",
    # TTL policies
    "TTL_CONFIG",
    "DEFAULT_TIER_RULES",
    "TierRule",
    "TierClassifier",
    "get_ttl_for_tier",
    "get_tier_for_key",
    # Cache
    "TieredCache",
    "get_tiered_cache",
    # Coalescing
    "RequestCoordinator",
    "get_request_coordinator",
    # Upkeep
    "CacheMaintenance",
]
