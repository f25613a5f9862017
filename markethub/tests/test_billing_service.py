"""Billing service: product mapping, Stripe parsing and webhook idempotency."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from markethub.core.config import settings
from markethub.core.database import billing_events, get_db_session
from markethub.features.billing.provider import BillingProviderError, BillingWebhookError, BillingWebhookResult
from markethub.features.billing.service import (
    billing_enabled,
    get_provider,
    process_webhook_event,
    tier_for_product,
)
from markethub.features.billing.stripe_provider import parse_event, parse_subscription
from markethub.features.usage.store import get_usage_record, upsert_usage_record
from markethub.models.usage import Tier, TierSource


def _event(event_id="evt_1", customer_id="cus_pro", event_type="customer.subscription.updated"):
    return BillingWebhookResult(event_id=event_id, event_type=event_type, customer_id=customer_id)


def test_billing_disabled_without_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    assert billing_enabled() is False
    assert get_provider() is None


def test_tier_for_product(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_PRODUCT_PRO", "prod_pro")
    monkeypatch.setattr(settings, "STRIPE_PRODUCT_MAX", "prod_max")

    assert tier_for_product("prod_pro") == Tier.PRO
    assert tier_for_product("prod_max") == Tier.MAX
    assert tier_for_product("prod_unknown") == Tier.FREE
    assert tier_for_product(None) == Tier.FREE


def test_default_pro_product_is_mapped():
    assert tier_for_product(settings.STRIPE_PRODUCT_PRO) == Tier.PRO


def test_parse_subscription_reads_product_and_period_end():
    sub = parse_subscription({
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "current_period_end": 1775000000,
        "items": {"data": [{"price": {"id": "price_1", "product": "prod_pro"}}]},
    })

    assert sub.product_id == "prod_pro"
    assert sub.current_period_end == datetime.fromtimestamp(1775000000, tz=timezone.utc)


def test_parse_subscription_handles_item_level_period_and_expanded_product():
    sub = parse_subscription({
        "id": "sub_2",
        "customer": "cus_2",
        "status": "active",
        "items": {"data": [{"current_period_end": 1775000000, "price": {"product": {"id": "prod_max"}}}]},
    })

    assert sub.product_id == "prod_max"
    assert sub.current_period_end is not None


def test_parse_event():
    result = parse_event({
        "id": "evt_9",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_9", "customer": "cus_9", "status": "canceled"}},
    })

    assert result.event_id == "evt_9"
    assert result.customer_id == "cus_9"
    assert result.subscription_id == "sub_9"
    assert result.status == "canceled"


def test_webhook_requires_billing(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    with pytest.raises(BillingWebhookError):
        process_webhook_event({"stripe-signature": "valid"}, b"{}")


def test_webhook_invalid_signature(billing_provider):
    with pytest.raises(BillingWebhookError):
        process_webhook_event({"stripe-signature": "forged"}, b"{}")


def test_webhook_re_resolves_linked_user(billing_provider):
    upsert_usage_record("user_pro", stripe_customer_id="cus_pro")
    billing_provider.add_customer("pro@example.com", "cus_pro", product_id="prod_pro")
    billing_provider.webhook_results.append(_event())

    result = process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')

    assert result.event_id == "evt_1"
    record = get_usage_record("user_pro")
    assert record.tier == Tier.PRO
    assert record.tier_source == TierSource.BILLING
    with get_db_session() as session:
        event = session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == "evt_1")
        ).first()
    assert event.processed is True
    assert event.processed_at is not None


def test_webhook_skips_duplicate_events(billing_provider):
    upsert_usage_record("user_pro", stripe_customer_id="cus_pro")
    billing_provider.webhook_results.extend([_event(), _event()])

    with patch("markethub.features.entitlements.service.resolve_entitlement") as resolve:
        process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')
        process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')

    assert resolve.call_count == 1
    with get_db_session() as session:
        rows = session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == "evt_1")
        ).all()
    assert len(rows) == 1


def test_webhook_for_unlinked_customer_is_recorded(billing_provider):
    billing_provider.webhook_results.append(_event(customer_id="cus_stranger"))

    with patch("markethub.features.entitlements.service.resolve_entitlement") as resolve:
        process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')

    resolve.assert_not_called()
    with get_db_session() as session:
        event = session.execute(select(billing_events)).first()
    assert event.processed is True


def test_webhook_failure_is_recorded(billing_provider):
    upsert_usage_record("user_pro", stripe_customer_id="cus_pro")
    billing_provider.webhook_results.append(_event())

    with patch(
        "markethub.features.entitlements.service.resolve_entitlement",
        side_effect=RuntimeError("db hiccup"),
    ):
        with pytest.raises(RuntimeError):
            process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')

    with get_db_session() as session:
        event = session.execute(select(billing_events)).first()
    assert event.processed is False
    assert event.error == "db hiccup"


def test_webhook_provider_outage_is_retried_on_redelivery(billing_provider):
    upsert_usage_record("user_pro", stripe_customer_id="cus_pro")
    billing_provider.add_customer("pro@example.com", "cus_pro", product_id="prod_pro")
    billing_provider.webhook_results.extend([_event(), _event()])
    billing_provider.fail = True

    with pytest.raises(BillingProviderError):
        process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')

    with get_db_session() as session:
        event = session.execute(select(billing_events)).first()
    assert event.processed is False
    assert event.error == "stripe unavailable"
    assert get_usage_record("user_pro").tier == Tier.FREE

    billing_provider.fail = False
    process_webhook_event({"stripe-signature": "valid"}, b'{"id": "evt_1"}')

    assert get_usage_record("user_pro").tier == Tier.PRO
    with get_db_session() as session:
        rows = session.execute(select(billing_events)).all()
    assert len(rows) == 1
    assert rows[0].processed is True
    assert rows[0].error is None
