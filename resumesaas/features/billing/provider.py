"""
Payment provider protocol.

Defines the interface the payment event synchronizer talks to. Provider
events are normalized into PaymentEvent so the ledger logic never sees
Stripe-specific payloads.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

# Provider-neutral event kinds
CHECKOUT_COMPLETED = "checkout.completed"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
IGNORED = "ignored"


@dataclass
class PaymentEvent:
    """A verified provider event, normalized."""
    event_id: str
    event_type: str  # provider's own type, e.g. customer.subscription.updated
    kind: str  # one of the neutral kinds above
    created: Optional[datetime] = None
    user_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None  # active, past_due, canceled
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Customer creation
    - Checkout and portal session creation
    - Webhook signature verification and parsing
    - Fetching the current subscription for on-demand sync
    """

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Ensure a provider customer exists for the user.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            PaymentProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a subscription checkout session.

        Returns:
            Checkout session URL
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a self-service portal session and return its URL."""
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            PaymentWebhookError: If signature invalid or parsing fails
        """
        ...

    def fetch_latest_subscription(self, customer_id: str) -> Optional[PaymentEvent]:
        """Current subscription state for a customer, or None if it has none."""
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Webhook signature or payload rejected."""
    pass
