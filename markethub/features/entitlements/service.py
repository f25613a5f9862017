"""
markethub/features/entitlements/service.py

Entitlement resolver.

Derives a user's authoritative tier from billing state and the stored coupon
grant, persists it in one upsert and returns the resolved EntitlementState.

Handles:
- Customer lookup by email (or a known customer id from webhooks)
- Billing vs coupon reconciliation via tier_source
- Period roll on resolution
- Degraded mode when the billing provider fails (nothing written)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple
import logging

from markethub.core.database import get_db_session
from markethub.core.logging import log_event
from markethub.core.tracing import start_span
from markethub.features.billing.provider import BillingProviderError
from markethub.features.billing.service import get_provider, tier_for_product
from markethub.features.tiers.catalog import UNLIMITED, TierCatalog, TierPolicy, get_catalog
from markethub.features.usage.periods import as_utc, next_period_start, roll_if_needed
from markethub.features.usage.store import (
    ensure_usage_record,
    get_usage_record,
    load_usage_row,
    reset_period,
    row_to_record,
    upsert_in_session,
)
from markethub.models.usage import (
    TIER_RANK,
    Category,
    EntitlementState,
    Tier,
    TierSource,
    UsageRecord,
    UsageSnapshot,
)


logger = logging.getLogger(__name__)

# Tier granted by any valid coupon
COUPON_TIER = Tier.PRO


@dataclass(frozen=True)
class BillingView:
    """What the billing provider says about a user."""
    tier: Tier
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_end: Optional[datetime] = None

    @property
    def has_subscription(self) -> bool:
        return self.subscription_id is not None


def fetch_billing_view(email: Optional[str], customer_id: Optional[str] = None) -> BillingView:
    """
    Look up the user's billing tier.

    Billing disabled, no email or no customer all mean free.

    Raises:
        BillingProviderError: Provider call failed or timed out
    """
    provider = get_provider()
    if provider is None:
        return BillingView(tier=Tier.FREE)

    if customer_id is None:
        if not email:
            return BillingView(tier=Tier.FREE)
        customer_id = provider.find_customer_by_email(email)
        if customer_id is None:
            return BillingView(tier=Tier.FREE)

    subscriptions = provider.list_active_subscriptions(customer_id, limit=1)
    if not subscriptions:
        return BillingView(tier=Tier.FREE, customer_id=customer_id)

    sub = subscriptions[0]
    return BillingView(
        tier=tier_for_product(sub.product_id),
        customer_id=customer_id,
        subscription_id=sub.subscription_id,
        subscription_end=sub.current_period_end,
    )


def reconcile_tier(
    billing_tier: Tier,
    coupon_applied: Optional[str],
    has_subscription: bool = False,
) -> Tuple[Tier, TierSource, bool]:
    """
    Combine billing and coupon grants into (tier, tier_source, subscribed).

    The higher-ranked grant wins; a paid billing tier wins ties.
    """
    coupon_tier = COUPON_TIER if coupon_applied else None
    if billing_tier != Tier.FREE and (coupon_tier is None or TIER_RANK[billing_tier] >= TIER_RANK[coupon_tier]):
        return billing_tier, TierSource.BILLING, True
    if coupon_tier is not None:
        return coupon_tier, TierSource.COUPON, True
    return Tier.FREE, TierSource.DEFAULT, has_subscription


def _limit_or_none(limit: int) -> Optional[int]:
    return None if limit == UNLIMITED else limit


def build_state(
    record: UsageRecord,
    policy: TierPolicy,
    tier_source: Optional[TierSource] = None,
    subscribed: Optional[bool] = None,
) -> EntitlementState:
    """EntitlementState for a (rolled) record under its tier policy."""
    limits: Dict[str, Optional[int]] = {
        category.value: _limit_or_none(limit) for category, limit in policy.limits.items()
    }
    if policy.combined:
        total_limit = _limit_or_none(policy.limit_for(Category.PRODUCTS))
    elif any(value is None for value in limits.values()):
        total_limit = None
    else:
        total_limit = sum(limits.values())

    return EntitlementState(
        user_id=record.user_id,
        tier=policy.tier,
        tier_source=tier_source or record.tier_source,
        subscribed=record.subscribed if subscribed is None else subscribed,
        subscription_end=record.subscription_end_date,
        usage=UsageSnapshot(period_start=record.period_start, **record.counts()),
        limits=limits,
        total_used=record.total_used(),
        total_limit=total_limit,
    )


def _degraded_state(
    user_id: str,
    current: datetime,
    catalog: TierCatalog,
    error: BillingProviderError,
) -> EntitlementState:
    record = get_usage_record(user_id, current)
    log_event(
        "warning",
        "entitlements.billing_unavailable",
        user_id=user_id,
        error_code="billing_provider_error",
        extra={"error": str(error), "has_record": record.persisted},
    )
    if record.coupon_applied:
        tier, source = COUPON_TIER, TierSource.COUPON
    else:
        tier, source = Tier.FREE, TierSource.DEFAULT
    policy = catalog.policy_for(tier)
    rolled = roll_if_needed(record, policy.cadence, current)
    return build_state(rolled, policy, tier_source=source, subscribed=bool(record.coupon_applied))


def resolve_entitlement(
    user_id: str,
    email: Optional[str],
    now: Optional[datetime] = None,
    catalog: Optional[TierCatalog] = None,
    customer_id: Optional[str] = None,
    raise_on_provider_error: bool = False,
) -> EntitlementState:
    """
    Resolve and persist the user's tier, then return the entitlement state.

    Idempotent: with no billing change, repeated calls return the same state.

    Args:
        user_id: User to resolve
        email: Billing lookup key (may be None when customer_id is known)
        now: Fixed timestamp (defaults to now, UTC)
        catalog: Tier catalog override
        customer_id: Known billing customer (webhook intake)
        raise_on_provider_error: Propagate BillingProviderError instead of
            returning the degraded state (webhook intake must not acknowledge)

    Returns:
        EntitlementState

    Raises:
        BillingProviderError: Provider failed and raise_on_provider_error is set
    """
    current = as_utc(now)
    active = catalog or get_catalog()

    with start_span("entitlements.resolve", {"user_id": user_id}):
        try:
            billing = fetch_billing_view(email, customer_id=customer_id)
        except BillingProviderError as e:
            if raise_on_provider_error:
                raise
            return _degraded_state(user_id, current, active, e)

        with get_db_session() as session:
            # The coupon grant is read under the row lock so a concurrent
            # redemption is either seen here or applied after this write
            ensure_usage_record(session, user_id, current)
            stored = row_to_record(load_usage_row(session, user_id, for_update=True))
            tier, source, subscribed = reconcile_tier(
                billing.tier, stored.coupon_applied, billing.has_subscription
            )

            fields = {
                "tier": tier,
                "tier_source": source,
                "subscribed": subscribed,
                "stripe_subscription_id": billing.subscription_id,
                "subscription_end_date": billing.subscription_end,
            }
            if billing.customer_id:
                fields["stripe_customer_id"] = billing.customer_id

            policy = active.policy_for(tier)
            upsert_in_session(session, user_id, fields, current)
            record = row_to_record(load_usage_row(session, user_id))
            rolled = roll_if_needed(record, policy.cadence, current)
            if rolled is not record:
                boundary = next_period_start(record.period_start, policy.cadence)
                reset_period(session, user_id, current, boundary=boundary)
                record = row_to_record(load_usage_row(session, user_id))

    if stored.tier != tier or stored.tier_source != source:
        log_event(
            "info",
            "entitlements.tier_changed",
            user_id=user_id,
            extra={
                "previous_tier": stored.tier.value,
                "tier": tier.value,
                "tier_source": source.value,
            },
        )

    return build_state(record, policy)
