"""
TTL configuration and key-to-tier classification.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from .core import CacheTier


# TTL by tier (in seconds)
TTL_CONFIG: Dict[CacheTier, int] = {
    CacheTier.STATIC: 3600,        # 1 hour
    CacheTier.SEMI_STATIC: 1800,   # 30 minutes
    CacheTier.DYNAMIC: 300,        # 5 minutes
    CacheTier.REAL_TIME: 60,       # 1 minute
}


@dataclass(frozen=True)
class TierRule:
    """Keys starting with `prefix` belong to `tier`."""
    prefix: str
    tier: CacheTier

    def matches(self, key: str) -> bool:
        return key.startswith(self.prefix)


# Evaluated in order; first match wins.
# photos_date_ has to come before the broader photos_ rule.
DEFAULT_TIER_RULES: Tuple[TierRule, ...] = (
    TierRule("manifest_", CacheTier.STATIC),
    TierRule("rover_info_", CacheTier.STATIC),
    TierRule("photos_date_", CacheTier.SEMI_STATIC),
    TierRule("latest_", CacheTier.SEMI_STATIC),
    TierRule("photos_", CacheTier.DYNAMIC),
    TierRule("telemetry_", CacheTier.DYNAMIC),
    TierRule("rover-data-", CacheTier.DYNAMIC),
    TierRule("status_", CacheTier.REAL_TIME),
    TierRule("live_", CacheTier.REAL_TIME),
)


class TierClassifier:
    """
    Maps cache keys to tiers using an ordered rule table.

    Classification is a pure function of the key; it never looks at the
    clock or at cache contents.
    """

    def __init__(
        self,
        rules: Sequence[TierRule] = DEFAULT_TIER_RULES,
        default: CacheTier = CacheTier.DYNAMIC,
        durations: Optional[Dict[CacheTier, int]] = None,
    ):
        self._rules = tuple(rules)
        self._default = default
        self._durations = dict(durations or TTL_CONFIG)
        missing = [tier for tier in CacheTier if tier not in self._durations]
        if missing:
            raise ValueError(f"No TTL configured for tiers: {missing}")

    @property
    def rules(self) -> Tuple[TierRule, ...]:
        return self._rules

    def classify(self, key: Any) -> CacheTier:
        key = str(key)
        for rule in self._rules:
            if rule.matches(key):
                return rule.tier
        return self._default

    def duration_for(self, tier: CacheTier) -> int:
        """TTL in seconds for a tier."""
        return self._durations[tier]

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """Tier table for debug output."""
        table: Dict[str, Dict[str, Any]] = {
            tier.value: {"duration": self._durations[tier], "patterns": []}
            for tier in CacheTier
        }
        for rule in self._rules:
            table[rule.tier.value]["patterns"].append(rule.prefix)
        return table


_default_classifier = TierClassifier()


def get_ttl_for_tier(tier: CacheTier) -> int:
    """
    Get the default TTL for a tier.

    Args:
        tier: The cache tier

    Returns:
        TTL in seconds
    """
    return TTL_CONFIG[tier]


def get_tier_for_key(key: Any) -> CacheTier:
    """Classify a key against the default rule table."""
    return _default_classifier.classify(key)
