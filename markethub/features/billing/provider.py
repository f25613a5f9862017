"""
Billing provider protocol.

Defines the narrow interface the entitlement resolver and webhook intake use
to talk to the billing system (Stripe). Tests swap in a fake implementation.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class BillingSubscription:
    """An active subscription as seen by the resolver."""
    subscription_id: str
    customer_id: str
    product_id: Optional[str]
    status: str
    current_period_end: Optional[datetime]


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    customer_id: Optional[str]
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer lookup by email
    - Active subscription listing
    - Webhook signature verification and parsing
    """

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """
        Find the billing customer for an email address.

        Returns:
            Provider customer ID, or None if no customer exists

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def list_active_subscriptions(self, customer_id: str, limit: int = 1) -> List[BillingSubscription]:
        """
        List the customer's active subscriptions (newest first).

        Raises:
            BillingProviderError: If the listing fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
