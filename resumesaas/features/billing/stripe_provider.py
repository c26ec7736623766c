"""
Stripe payment provider implementation.

Implements PaymentProvider using the Stripe API.
Handles webhook signature verification and normalizes Stripe events into
provider-neutral PaymentEvents.
"""
import json
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import stripe

from resumesaas.core.config import settings
from resumesaas.features.billing.provider import (
    CHECKOUT_COMPLETED,
    IGNORED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    PaymentEvent,
    PaymentProviderError,
    PaymentWebhookError,
)
from resumesaas.features.plans.catalog import plan_for_price

SUBSCRIPTION_EVENT_KINDS = {
    "customer.subscription.created": SUBSCRIPTION_CREATED,
    "customer.subscription.updated": SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SUBSCRIPTION_DELETED,
}

# Stripe subscription status -> ledger status
STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a plain dict or a StripeObject."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, default)
    return default if value is None else value


def _ref(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the full object
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def map_status(stripe_status: Optional[str]) -> str:
    return STATUS_MAP.get(stripe_status or "", "past_due")


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
            tolerance: Max age in seconds of a signed webhook timestamp
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create the Stripe customer for a user (idempotent per user)."""
        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        try:
            customer = stripe.Customer.create(idempotency_key=f"customer-{user_id}", **params)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe customer creation failed: {e}") from e
        return _get(customer, "id")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        metadata = metadata or {}
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=metadata.get("user_id"),
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe checkout session creation failed: {e}") from e
        return _get(session, "url")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe portal session creation failed: {e}") from e
        return _get(session, "url")

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}") from e
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}") from e

        if not isinstance(event, dict):
            raise PaymentWebhookError("Invalid payload: expected a JSON object")
        return self.normalize_event(event)

    def normalize_event(self, event: Dict[str, Any]) -> PaymentEvent:
        """Map a Stripe event onto a provider-neutral PaymentEvent."""
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise PaymentWebhookError("Invalid payload: missing event id or type")

        data = _get(_get(event, "data"), "object") or {}
        created = _ts(event.get("created"))

        if event_type in SUBSCRIPTION_EVENT_KINDS:
            result = self._from_subscription(data, event_id, event_type, SUBSCRIPTION_EVENT_KINDS[event_type])
            if result.kind == SUBSCRIPTION_DELETED:
                result.status = "canceled"
        elif event_type == "checkout.session.completed":
            result = self._from_checkout(data, event_id, event_type)
        elif event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
            result = self._from_invoice(data, event_id, event_type)
        else:
            result = PaymentEvent(event_id=event_id, event_type=event_type, kind=IGNORED)

        result.created = created
        return result

    def _from_subscription(self, sub: Any, event_id: str, event_type: str, kind: str) -> PaymentEvent:
        metadata = dict(_get(sub, "metadata") or {})
        items = _get(_get(sub, "items"), "data") or []
        first_item = items[0] if items else None
        price_id = _ref(_get(first_item, "price"))

        # Newer API versions moved the billing period onto the subscription item
        period_start = _get(sub, "current_period_start") or _get(first_item, "current_period_start")
        period_end = _get(sub, "current_period_end") or _get(first_item, "current_period_end")

        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            kind=kind,
            user_id=metadata.get("user_id"),
            customer_ref=_ref(_get(sub, "customer")),
            subscription_ref=_get(sub, "id"),
            plan_id=metadata.get("plan_id") or plan_for_price(price_id),
            status=map_status(_get(sub, "status")),
            period_start=_ts(period_start),
            period_end=_ts(period_end),
            cancel_at_period_end=bool(_get(sub, "cancel_at_period_end", False)),
            metadata=metadata,
        )

    def _from_checkout(self, session: Any, event_id: str, event_type: str) -> PaymentEvent:
        if _get(session, "mode") != "subscription":
            return PaymentEvent(event_id=event_id, event_type=event_type, kind=IGNORED)
        metadata = dict(_get(session, "metadata") or {})
        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            kind=CHECKOUT_COMPLETED,
            user_id=metadata.get("user_id") or _get(session, "client_reference_id"),
            customer_ref=_ref(_get(session, "customer")),
            subscription_ref=_ref(_get(session, "subscription")),
            plan_id=metadata.get("plan_id"),
            status="active",
            metadata=metadata,
        )

    def _from_invoice(self, invoice: Any, event_id: str, event_type: str) -> PaymentEvent:
        details = _get(invoice, "subscription_details") or _get(_get(invoice, "parent"), "subscription_details")
        metadata = dict(_get(details, "metadata") or {})
        subscription_ref = _ref(_get(invoice, "subscription")) or _ref(_get(details, "subscription"))

        lines = _get(_get(invoice, "lines"), "data") or []
        period = _get(lines[0], "period") if lines else None

        succeeded = event_type == "invoice.payment_succeeded"
        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            kind=PAYMENT_SUCCEEDED if succeeded else PAYMENT_FAILED,
            user_id=metadata.get("user_id"),
            customer_ref=_ref(_get(invoice, "customer")),
            subscription_ref=subscription_ref,
            plan_id=metadata.get("plan_id"),
            status="active" if succeeded else "past_due",
            period_start=_ts(_get(period, "start")),
            period_end=_ts(_get(period, "end")),
            metadata=metadata,
        )

    def fetch_latest_subscription(self, customer_id: str) -> Optional[PaymentEvent]:
        """Pull the customer's most recent subscription from Stripe."""
        try:
            listing = stripe.Subscription.list(customer=customer_id, status="all", limit=1)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe subscription lookup failed: {e}") from e

        subs = _get(listing, "data") or []
        if not subs:
            return None
        now = datetime.now(timezone.utc)
        sub = subs[0]
        result = self._from_subscription(
            sub,
            event_id=f"sync:{_get(sub, 'id')}:{int(now.timestamp())}",
            event_type="subscription.sync",
            kind=SUBSCRIPTION_UPDATED,
        )
        result.created = now
        return result
