"""
markethub/features/tiers/catalog.py

Tier catalog: static mapping from tier to usage limits and reset cadence.

Two catalogs are defined, one of which is active (settings.USAGE_POLICY):
- per_category_monthly: every category has its own monthly limit (default)
- combined_daily: one daily pool shared by all categories

Limits use -1 for unlimited. Unknown tiers resolve to free.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from markethub.core.config import settings
from markethub.models.usage import Cadence, Category, Tier


logger = logging.getLogger(__name__)

UNLIMITED = -1

DEFAULT_POLICY = "per_category_monthly"

# Catalog configurations
TIER_CONFIGS = {
    "per_category_monthly": {
        "free": {
            "name": "Free",
            "cadence": "monthly",
            "limits": {"products": 15, "images": 15, "copies": 15, "content_marketing": 15},
        },
        "pro": {
            "name": "Pro",
            "cadence": "monthly",
            "limits": {"products": 50, "images": 50, "copies": 50, "content_marketing": 50},
        },
        "max": {
            "name": "Max",
            "cadence": "monthly",
            "limits": {"products": 100, "images": 100, "copies": 100, "content_marketing": 100},
        },
    },
    "combined_daily": {
        "free": {"name": "Free", "cadence": "daily", "combined_limit": 10},
        "pro": {"name": "Pro", "cadence": "daily", "combined_limit": UNLIMITED},
        # Two-tier policy: max is granted the same unlimited pool as pro
        "max": {"name": "Max", "cadence": "daily", "combined_limit": UNLIMITED},
    },
}


@dataclass(frozen=True)
class TierPolicy:
    """Limits and cadence for one tier under one catalog."""
    tier: Tier
    name: str
    cadence: Cadence
    limits: Dict[Category, int]
    combined: bool = False

    def limit_for(self, category: Category) -> int:
        return self.limits[category]

    def is_unlimited(self, category: Category) -> bool:
        return self.limits[category] == UNLIMITED


def normalize_tier(value: Union[Tier, str, None]) -> Tier:
    """Map any stored or external tier value to a Tier; unknown values become free."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier((value or "").strip().lower())
    except ValueError:
        logger.warning("[tiers] unknown tier, using free", extra={"tier_value": value})
        return Tier.FREE


def _build_policy(tier: Tier, config: dict) -> TierPolicy:
    if "combined_limit" in config:
        pool = int(config["combined_limit"])
        limits = {category: pool for category in Category}
        combined = True
    else:
        limits = {Category(key): int(value) for key, value in config["limits"].items()}
        combined = False
    missing = [c.value for c in Category if c not in limits]
    if missing:
        raise ValueError(f"Tier {tier.value} has no limit for: {', '.join(missing)}")
    return TierPolicy(
        tier=tier,
        name=config["name"],
        cadence=Cadence(config["cadence"]),
        limits=limits,
        combined=combined,
    )


class TierCatalog:
    """A complete tier → policy mapping. Every Tier must be present."""

    def __init__(self, name: str, configs: Dict[str, dict]):
        self.name = name
        self.policies: Dict[Tier, TierPolicy] = {
            tier: _build_policy(tier, configs[tier.value]) for tier in Tier
        }

    def policy_for(self, tier: Union[Tier, str, None]) -> TierPolicy:
        return self.policies[normalize_tier(tier)]

    def limits_for(self, tier: Union[Tier, str, None]) -> Dict[str, int]:
        policy = self.policy_for(tier)
        return {category.value: limit for category, limit in policy.limits.items()}

    def reset_cadence_for(self, tier: Union[Tier, str, None]) -> Cadence:
        return self.policy_for(tier).cadence

    def __repr__(self) -> str:
        return f"TierCatalog({self.name!r})"


CATALOGS = {name: TierCatalog(name, configs) for name, configs in TIER_CONFIGS.items()}


def get_catalog(name: Optional[str] = None) -> TierCatalog:
    """Return the named catalog, or the one selected by settings.USAGE_POLICY."""
    key = name or settings.USAGE_POLICY
    catalog = CATALOGS.get(key)
    if catalog is None:
        logger.warning(
            "[tiers] unknown usage policy, using default",
            extra={"usage_policy": key, "default_policy": DEFAULT_POLICY},
        )
        catalog = CATALOGS[DEFAULT_POLICY]
    return catalog


def limits_for(tier: Union[Tier, str, None], catalog: Optional[TierCatalog] = None) -> Dict[str, int]:
    return (catalog or get_catalog()).limits_for(tier)


def reset_cadence_for(tier: Union[Tier, str, None], catalog: Optional[TierCatalog] = None) -> Cadence:
    return (catalog or get_catalog()).reset_cadence_for(tier)
