"""
Billing service.

Coordinates:
- Provider selection (billing is optional; disabled without STRIPE_SECRET_KEY)
- Product → tier mapping
- Webhook intake (idempotent via billing_events)

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
import logging
from typing import Dict, Optional
from datetime import datetime, timezone
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from markethub.core.config import settings
from markethub.core.database import get_db_session, billing_events
from markethub.core.logging import log_event
from markethub.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from markethub.features.billing.stripe_provider import StripeProvider
from markethub.features.usage.store import find_user_by_customer
from markethub.models.usage import Tier


logger = logging.getLogger(__name__)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        logger.warning("[billing] provider unavailable", exc_info=True)
        return None


def product_tier_map() -> Dict[str, Tier]:
    """Static Stripe product id → tier table from settings."""
    mapping: Dict[str, Tier] = {}
    if settings.STRIPE_PRODUCT_PRO:
        mapping[settings.STRIPE_PRODUCT_PRO] = Tier.PRO
    if settings.STRIPE_PRODUCT_MAX:
        mapping[settings.STRIPE_PRODUCT_MAX] = Tier.MAX
    return mapping


def tier_for_product(product_id: Optional[str]) -> Tier:
    """Tier granted by a subscribed product; unknown products grant free."""
    if not product_id:
        return Tier.FREE
    tier = product_tier_map().get(product_id)
    if tier is None:
        logger.warning("[billing] unmapped product, using free", extra={"product_id": product_id})
        return Tier.FREE
    return tier


def _mark_event(event_id: str, **values) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(**values)
        )


def _record_event(result: BillingWebhookResult, payload_hash: str) -> bool:
    """Insert the billing_events row; False when the event id is already recorded."""
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=result.event_id,
                    event_type=result.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        return False
    return True


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip recorded events, retry ones that failed)
    3. Re-resolve the entitlement of the user linked to the customer
    4. Mark as processed

    Returns:
        BillingWebhookResult

    Raises:
        BillingWebhookError: If billing is disabled or the signature is invalid
        BillingProviderError: Billing provider unreachable while re-resolving
            (the event keeps its error and is retried on redelivery)
    """
    # Deferred: the resolver depends on this module
    from markethub.features.entitlements.service import resolve_entitlement

    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed, billing_events.c.error).where(
                billing_events.c.stripe_event_id == result.event_id
            )
        ).fetchone()

    # Only a failed attempt is retried; processed or in-flight events are skipped
    if existing and (existing.processed or existing.error is None):
        log_event("info", "billing.webhook.duplicate", event_type=result.event_type, extra={"event_id": result.event_id})
        return result

    if existing:
        log_event(
            "info",
            "billing.webhook.retry",
            event_type=result.event_type,
            extra={"event_id": result.event_id, "previous_error": existing.error},
        )
        _mark_event(result.event_id, error=None)
    elif not _record_event(result, payload_hash):
        # Another worker recorded this event first
        return result

    try:
        user_id = find_user_by_customer(result.customer_id) if result.customer_id else None
        if user_id:
            resolve_entitlement(
                user_id, None, customer_id=result.customer_id, raise_on_provider_error=True
            )
        else:
            log_event(
                "info",
                "billing.webhook.unlinked_customer",
                event_type=result.event_type,
                extra={"event_id": result.event_id, "customer_id": result.customer_id},
            )
        _mark_event(result.event_id, processed=True, processed_at=datetime.now(timezone.utc))
    except Exception as e:
        _mark_event(result.event_id, error=str(e))
        raise

    log_event(
        "info",
        "billing.webhook.processed",
        user_id=user_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id},
    )
    return result
