"""Entitlement resolution: billing lookup, coupon reconciliation, idempotency."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from markethub.features.billing.provider import BillingProviderError
from markethub.features.coupons.service import redeem_coupon
from markethub.features.entitlements import service as entitlements
from markethub.features.entitlements.service import reconcile_tier, resolve_entitlement
from markethub.features.tiers.catalog import get_catalog
from markethub.features.usage.store import get_usage_record, upsert_usage_record
from markethub.models.usage import Tier, TierSource


NOW = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
MONTHLY = get_catalog("per_category_monthly")


def test_billing_disabled_resolves_to_free_and_persists():
    state = resolve_entitlement("user_a", "a@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.FREE
    assert state.tier_source == TierSource.DEFAULT
    assert state.subscribed is False
    assert state.subscription_end is None
    assert state.limits["images"] == 15
    assert state.total_limit == 60
    assert state.total_used == 0
    assert get_usage_record("user_a", NOW).persisted is True


def test_no_customer_is_free(billing_provider):
    state = resolve_entitlement("user_a", "nobody@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.FREE
    assert billing_provider.calls == ["find:nobody@example.com"]


def test_active_pro_subscription(billing_provider):
    billing_provider.add_customer("pro@example.com", "cus_pro", product_id="prod_pro")

    state = resolve_entitlement("user_pro", "pro@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.PRO
    assert state.tier_source == TierSource.BILLING
    assert state.subscribed is True
    assert state.subscription_end is not None
    assert state.limits["copies"] == 50
    record = get_usage_record("user_pro", NOW)
    assert record.stripe_customer_id == "cus_pro"
    assert record.stripe_subscription_id == "sub_cus_pro"


def test_unknown_product_resolves_to_free(billing_provider):
    billing_provider.add_customer("odd@example.com", "cus_odd", product_id="prod_legacy")

    state = resolve_entitlement("user_odd", "odd@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.FREE
    assert state.tier_source == TierSource.DEFAULT


def test_resolution_is_idempotent(billing_provider):
    billing_provider.add_customer("max@example.com", "cus_max", product_id="prod_max")

    first = resolve_entitlement("user_max", "max@example.com", now=NOW, catalog=MONTHLY)
    second = resolve_entitlement("user_max", "max@example.com", now=NOW, catalog=MONTHLY)

    assert first == second
    assert first.tier == Tier.MAX


def test_cancelled_subscription_downgrades(billing_provider):
    billing_provider.add_customer("pro@example.com", "cus_pro", product_id="prod_pro")
    resolve_entitlement("user_pro", "pro@example.com", now=NOW, catalog=MONTHLY)

    billing_provider.cancel("cus_pro")
    state = resolve_entitlement("user_pro", "pro@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.FREE
    assert state.subscribed is False
    assert get_usage_record("user_pro", NOW).stripe_subscription_id is None


def test_coupon_survives_free_billing(billing_provider):
    upsert_usage_record(
        "user_coupon", now=NOW, tier=Tier.PRO, tier_source=TierSource.COUPON,
        subscribed=True, coupon_applied="JESUSINTECH", coupon_applied_at=NOW,
    )

    state = resolve_entitlement("user_coupon", "coupon@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.PRO
    assert state.tier_source == TierSource.COUPON
    assert state.subscribed is True


def test_higher_paid_tier_overrides_coupon(billing_provider):
    upsert_usage_record("user_both", now=NOW, tier=Tier.PRO, tier_source=TierSource.COUPON, coupon_applied="JESUSINTECH")
    billing_provider.add_customer("both@example.com", "cus_both", product_id="prod_max")

    state = resolve_entitlement("user_both", "both@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.MAX
    assert state.tier_source == TierSource.BILLING


def test_reconcile_tier_rules():
    assert reconcile_tier(Tier.FREE, None) == (Tier.FREE, TierSource.DEFAULT, False)
    assert reconcile_tier(Tier.FREE, None, has_subscription=True) == (Tier.FREE, TierSource.DEFAULT, True)
    assert reconcile_tier(Tier.FREE, "JESUSINTECH") == (Tier.PRO, TierSource.COUPON, True)
    assert reconcile_tier(Tier.PRO, "JESUSINTECH") == (Tier.PRO, TierSource.BILLING, True)
    assert reconcile_tier(Tier.MAX, None) == (Tier.MAX, TierSource.BILLING, True)


def test_provider_failure_writes_nothing(billing_provider):
    billing_provider.fail = True

    state = resolve_entitlement("user_fail", "fail@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.FREE
    assert get_usage_record("user_fail", NOW).persisted is False


def test_provider_failure_keeps_coupon_tier(billing_provider):
    upsert_usage_record("user_coupon", now=NOW, tier=Tier.PRO, tier_source=TierSource.COUPON, coupon_applied="JESUSINTECH")
    billing_provider.fail = True

    state = resolve_entitlement("user_coupon", "coupon@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.PRO
    assert state.tier_source == TierSource.COUPON


def test_resolution_rolls_period_and_keeps_counters_otherwise():
    last_month = NOW - timedelta(days=35)
    upsert_usage_record("user_roll", now=last_month, period_start=last_month, images_count=9)
    upsert_usage_record("user_same", now=NOW, period_start=NOW, images_count=9)

    rolled = resolve_entitlement("user_roll", None, now=NOW, catalog=MONTHLY)
    same = resolve_entitlement("user_same", None, now=NOW, catalog=MONTHLY)

    assert rolled.usage.images == 0
    assert rolled.usage.period_start == NOW
    assert get_usage_record("user_roll", NOW).images_count == 0
    assert same.usage.images == 9
    assert same.total_used == 9


def test_unlimited_tier_reports_no_total_limit(billing_provider):
    billing_provider.add_customer("pro@example.com", "cus_pro", product_id="prod_pro")

    state = resolve_entitlement("user_pro", "pro@example.com", now=NOW, catalog=get_catalog("combined_daily"))

    assert state.limits == {"products": None, "images": None, "copies": None, "content_marketing": None}
    assert state.total_limit is None


def test_provider_failure_propagates_when_requested(billing_provider):
    billing_provider.fail = True

    with pytest.raises(BillingProviderError):
        resolve_entitlement(
            "user_fail", "fail@example.com", now=NOW, catalog=MONTHLY, raise_on_provider_error=True,
        )

    assert get_usage_record("user_fail", NOW).persisted is False


def test_provider_failure_log_reports_missing_record(billing_provider, caplog):
    billing_provider.fail = True

    with caplog.at_level(logging.WARNING, logger="markethub"):
        resolve_entitlement("user_fail", "fail@example.com", now=NOW, catalog=MONTHLY)

    record = next(r for r in caplog.records if r.getMessage() == "entitlements.billing_unavailable")
    assert record.has_record == "False"


def test_coupon_redeemed_during_resolution_is_kept(monkeypatch):
    real_ensure = entitlements.ensure_usage_record

    def redeem_then_ensure(session, user_id, now=None):
        # Redemption commits after billing lookup, before the resolver writes
        redeem_coupon(user_id, "JESUSINTECH", now=NOW)
        real_ensure(session, user_id, now)

    monkeypatch.setattr(entitlements, "ensure_usage_record", redeem_then_ensure)

    state = resolve_entitlement("user_race", "race@example.com", now=NOW, catalog=MONTHLY)

    assert state.tier == Tier.PRO
    assert state.tier_source == TierSource.COUPON
    record = get_usage_record("user_race", NOW)
    assert record.tier == Tier.PRO
    assert record.coupon_applied == "JESUSINTECH"
