"""
markethub/models/usage.py

Usage metering and entitlement models.

A UsageRecord is the single per-user row holding the tier, the per-category
counters of the current period and the billing/coupon linkage.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    MAX = "max"


# Higher rank wins when billing and coupon disagree
TIER_RANK = {Tier.FREE: 0, Tier.PRO: 1, Tier.MAX: 2}


class TierSource(str, Enum):
    """Which input decided the stored tier."""
    DEFAULT = "default"
    BILLING = "billing"
    COUPON = "coupon"


class Category(str, Enum):
    """Metered action types."""
    PRODUCTS = "products"
    IMAGES = "images"
    COPIES = "copies"
    CONTENT_MARKETING = "content_marketing"

    @property
    def column(self) -> str:
        return f"{self.value}_count"


class Cadence(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class UsageRecord(BaseModel):
    """
    UsageRecord is one user's metering row.

    Constraint: exactly one record per user_id.
    Counters: never negative, reset to zero when the period rolls.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier = Tier.FREE
    tier_source: TierSource = TierSource.DEFAULT
    subscribed: bool = False
    products_count: int = 0
    images_count: int = 0
    copies_count: int = 0
    content_marketing_count: int = 0
    period_start: datetime
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_end_date: Optional[datetime] = None
    coupon_applied: Optional[str] = None
    coupon_applied_at: Optional[datetime] = None
    persisted: bool = True

    def count_for(self, category: Category) -> int:
        return getattr(self, category.column)

    def counts(self) -> Dict[str, int]:
        return {c.value: self.count_for(c) for c in Category}

    def total_used(self) -> int:
        return sum(self.count_for(c) for c in Category)


class UsageSnapshot(BaseModel):
    """Per-category counts of the current period, as shown to clients."""
    model_config = ConfigDict(frozen=True)

    products: int
    images: int
    copies: int
    content_marketing: int
    period_start: datetime


class IncrementResult(BaseModel):
    """
    Outcome of check_and_increment.

    limit and remaining are None when the category is unlimited for the tier.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    category: Category
    tier: Tier
    used: int
    limit: Optional[int]
    remaining: Optional[int]


class EntitlementState(BaseModel):
    """Resolved, authoritative tier + subscription state for one user."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier
    tier_source: TierSource
    subscribed: bool
    subscription_end: Optional[datetime] = None
    usage: UsageSnapshot
    limits: Dict[str, Optional[int]]
    total_used: int
    total_limit: Optional[int]


class CouponResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
