"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe SDK.
Handles customer lookup, subscription listing and webhook verification.
"""
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
import stripe

from markethub.core.config import settings
from markethub.features.billing.provider import (
    BillingProviderError,
    BillingSubscription,
    BillingWebhookError,
    BillingWebhookResult,
)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    # StripeObject supports item access; plain dicts come from tests and raw events
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.new_default_http_client(timeout=settings.STRIPE_TIMEOUT_SECONDS)

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """Return the first Stripe customer id registered with this email."""
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}")
        if not customers.data:
            return None
        return customers.data[0].id

    def list_active_subscriptions(self, customer_id: str, limit: int = 1) -> List[BillingSubscription]:
        """List active Stripe subscriptions for a customer."""
        try:
            subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=limit)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}")
        return [parse_subscription(sub) for sub in subscriptions.data]

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return parse_event(event)


def parse_subscription(sub: Any) -> BillingSubscription:
    """Normalize a Stripe subscription (StripeObject or dict)."""
    items = _get(_get(sub, "items", {}), "data", [])
    first_item = items[0] if items else {}
    price = _get(first_item, "price", {})
    product = _get(price, "product")
    # product may be expanded into an object
    if product is not None and not isinstance(product, str):
        product = _get(product, "id")
    # Newer API versions carry the period end on the item
    period_end = _get(sub, "current_period_end") or _get(first_item, "current_period_end")
    return BillingSubscription(
        subscription_id=_get(sub, "id"),
        customer_id=_get(sub, "customer"),
        product_id=product,
        status=_get(sub, "status", "unknown"),
        current_period_end=_timestamp(period_end),
    )


def parse_event(event: Any) -> BillingWebhookResult:
    """Parse Stripe event into normalized BillingWebhookResult."""
    event_type = _get(event, "type", "")
    data = _get(_get(event, "data", {}), "object", {})

    subscription_id = None
    status = None
    if event_type.startswith("customer.subscription"):
        subscription_id = _get(data, "id")
        status = _get(data, "status")
    elif event_type == "checkout.session.completed":
        subscription_id = _get(data, "subscription")
    elif event_type.startswith("invoice."):
        subscription_id = _get(data, "subscription")

    customer_id = _get(data, "customer")
    if customer_id is not None and not isinstance(customer_id, str):
        customer_id = _get(customer_id, "id")

    return BillingWebhookResult(
        event_id=_get(event, "id"),
        event_type=event_type,
        customer_id=customer_id,
        subscription_id=subscription_id,
        status=status,
        metadata=dict(_get(data, "metadata", {})),
    )
