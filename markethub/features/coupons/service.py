"""
markethub/features/coupons/service.py

Coupon redemption: a fixed allow-list of codes that grant Pro outside billing.
Invalid codes return a structured failure and never write.
"""

from datetime import datetime
from typing import Optional, Set

from markethub.core.config import settings
from markethub.core.logging import log_event
from markethub.features.entitlements.service import COUPON_TIER
from markethub.features.usage.periods import as_utc
from markethub.features.usage.store import get_usage_record, upsert_usage_record
from markethub.models.usage import TIER_RANK, CouponResult, TierSource


MSG_REQUIRED = "Coupon code is required"
MSG_INVALID = "Invalid coupon code"
MSG_APPLIED = "Coupon applied successfully! You now have Pro access."


def valid_coupon_codes(raw: Optional[str] = None) -> Set[str]:
    """Upper-cased allow-list from a comma-separated setting."""
    source = settings.COUPON_CODES if raw is None else raw
    return {code.strip().upper() for code in source.split(",") if code.strip()}


def redeem_coupon(user_id: str, code: Optional[str], now: Optional[datetime] = None) -> CouponResult:
    """
    Validate `code` and grant the coupon tier.

    Redeeming again is a safe no-op upgrade; a higher paid tier is kept.
    """
    normalized = (code or "").strip().upper()
    if not normalized:
        return CouponResult(success=False, message=MSG_REQUIRED)

    if normalized not in valid_coupon_codes():
        log_event("info", "coupon.rejected", user_id=user_id, error_code="invalid_coupon")
        return CouponResult(success=False, message=MSG_INVALID)

    current = as_utc(now)
    stored = get_usage_record(user_id, current)
    fields = {"coupon_applied": normalized, "subscribed": True}
    # Re-redeeming keeps the first redemption time
    if stored.coupon_applied != normalized or stored.coupon_applied_at is None:
        fields["coupon_applied_at"] = current
    # A paid tier of equal or higher rank keeps its billing source
    outranked = TIER_RANK[stored.tier] < TIER_RANK[COUPON_TIER]
    if outranked or (stored.tier == COUPON_TIER and stored.tier_source != TierSource.BILLING):
        fields["tier"] = COUPON_TIER
        fields["tier_source"] = TierSource.COUPON

    upsert_usage_record(user_id, now=current, **fields)
    log_event(
        "info",
        "coupon.applied",
        user_id=user_id,
        extra={
            "coupon": normalized,
            "tier": fields.get("tier", stored.tier).value,
            "new_record": not stored.persisted,
        },
    )
    return CouponResult(success=True, message=MSG_APPLIED)
