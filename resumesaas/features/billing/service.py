"""
Billing service orchestrator (payment event synchronizer).

Coordinates:
- Customer management
- Checkout / portal sessions
- Webhook processing (verify, dedupe, apply, mark processed)
- On-demand subscription sync after checkout redirects

All Stripe-specific code is in stripe_provider.py. The ledger store is the
only thing this module writes subscription state to.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple
from sqlalchemy import desc, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resumesaas.core.config import settings
from resumesaas.core.database import (
    billing_customers,
    get_db_session,
    payment_events,
    session_scope,
)
from resumesaas.core.errors import (
    BillingDisabledError,
    ConflictError,
    InvalidWebhookSignatureError,
    NotFoundError,
    PlanNotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from resumesaas.features.billing.provider import (
    CHECKOUT_COMPLETED,
    IGNORED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    PaymentEvent,
    PaymentProvider,
    PaymentProviderError,
    PaymentWebhookError,
)
from resumesaas.features.billing.stripe_provider import StripeProvider
from resumesaas.features.ledger.store import (
    find_user_by_external_refs,
    get_subscription,
    set_subscription_status,
    upsert_subscription,
)
from resumesaas.features.plans.catalog import FREE_PLAN_ID, get_catalog, price_for_plan
from resumesaas.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = timedelta(days=30)

# Outcomes recorded for a webhook delivery
PROCESSED = "processed"
DUPLICATE = "duplicate"


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    kind: str
    status: str  # processed | duplicate
    user_id: Optional[str] = None
    note: Optional[str] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except PaymentProviderError:
        logger.warning("[billing] provider unavailable", exc_info=True)
        return None


def _require_provider() -> PaymentProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    return provider


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_customer_ref(user_id: str, session: Optional[Session] = None) -> Optional[str]:
    with session_scope(session) as s:
        row = s.execute(
            select(billing_customers.c.stripe_customer_id).where(billing_customers.c.user_id == user_id)
        ).first()
        return row[0] if row else None


def _link_customer(s: Session, user_id: str, customer_ref: str) -> None:
    existing = s.execute(
        select(billing_customers.c.user_id).where(billing_customers.c.stripe_customer_id == customer_ref)
    ).first()
    if existing is not None:
        return
    try:
        with s.begin_nested():
            s.execute(insert(billing_customers).values(user_id=user_id, stripe_customer_id=customer_ref))
    except IntegrityError:
        logger.warning("[billing] customer already linked", extra={"user_id": user_id})


def ensure_customer_for_user(user_id: str, email: Optional[str] = None) -> str:
    """
    Ensure a billing customer exists for the user.

    The provider call happens outside any database transaction.

    Returns:
        Stripe customer ID

    Raises:
        BillingDisabledError: Stripe not configured
        PaymentProviderError: If customer creation fails
    """
    provider = _require_provider()
    existing = get_customer_ref(user_id)
    if existing:
        return existing

    customer_ref = provider.ensure_customer(user_id, email)
    with get_db_session() as session:
        _link_customer(session, user_id, customer_ref)
        stored = get_customer_ref(user_id, session=session)
    return stored or customer_ref


def start_checkout(
    user_id: str,
    plan_id: str,
    success_url: str,
    cancel_url: str,
    email: Optional[str] = None,
) -> str:
    """
    Start checkout session for a subscription.

    Args:
        plan_id: Internal plan ID (basic, standard, pro)

    Returns:
        Checkout URL

    Raises:
        BillingDisabledError: Stripe not configured
        PlanNotFoundError: unknown plan
        ValidationError: plan has no Stripe price (free plan included)
        PaymentProviderError: If checkout creation fails
    """
    provider = _require_provider()
    plan = get_catalog().get_plan(plan_id)
    if plan.plan_id == FREE_PLAN_ID:
        raise ValidationError("The free plan does not require checkout")

    price_id = price_for_plan(plan.plan_id)
    if not price_id:
        raise ValidationError(f"No Stripe price configured for plan: {plan.plan_id}")

    customer_ref = ensure_customer_for_user(user_id, email)
    url = provider.create_checkout_session(
        customer_id=customer_ref,
        price_id=price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={
            "user_id": user_id,
            "plan_id": plan.plan_id,
            "credits": str(plan.monthly_credit_allowance),
        },
    )
    logger.info("[billing] checkout started", extra={"user_id": user_id, "plan_id": plan.plan_id})
    return url


def start_portal(user_id: str, return_url: str) -> str:
    """
    Start billing portal session for customer self-service.

    Raises:
        BillingDisabledError: Stripe not configured
        NotFoundError: user never checked out
    """
    provider = _require_provider()
    customer_ref = get_customer_ref(user_id) or get_subscription(user_id).external_customer_ref
    if not customer_ref:
        raise NotFoundError("Customer not found. Complete checkout first.")
    return provider.create_portal_session(customer_id=customer_ref, return_url=return_url)


def _resolve_user(event: PaymentEvent, s: Session) -> Optional[str]:
    if event.user_id:
        return event.user_id
    if event.customer_ref:
        row = s.execute(
            select(billing_customers.c.user_id).where(billing_customers.c.stripe_customer_id == event.customer_ref)
        ).first()
        if row:
            return row[0]
    return find_user_by_external_refs(
        customer_ref=event.customer_ref,
        subscription_ref=event.subscription_ref,
        session=s,
    )


def _has_paid_row(existing: Subscription) -> bool:
    return not existing.is_implicit and existing.plan_id != FREE_PLAN_ID


def _is_other_subscription(event: PaymentEvent, existing: Subscription) -> bool:
    return bool(
        _has_paid_row(existing)
        and event.subscription_ref
        and existing.external_subscription_ref
        and event.subscription_ref != existing.external_subscription_ref
    )


def _resolve_period(event: PaymentEvent, existing: Subscription, now: datetime) -> Tuple[datetime, datetime, bool]:
    """Period to store, and whether it is only a placeholder."""
    if event.period_start and event.period_end:
        return event.period_start, event.period_end, False
    same_subscription = (
        _has_paid_row(existing)
        and event.subscription_ref is not None
        and existing.external_subscription_ref == event.subscription_ref
    )
    if same_subscription:
        return existing.current_period_start, existing.current_period_end, False
    return now, now + DEFAULT_PERIOD, True


def _upsert_from_event(
    event: PaymentEvent,
    user_id: str,
    existing: Subscription,
    plan_id: str,
    status: str,
    as_of: datetime,
    s: Session,
) -> Optional[str]:
    try:
        get_catalog().get_plan(plan_id)
    except PlanNotFoundError:
        return f"unknown plan {plan_id}"

    period_start, period_end, provisional = _resolve_period(event, existing, as_of)
    changed = upsert_subscription(
        user_id,
        plan_id,
        SubscriptionStatus(status),
        customer_ref=event.customer_ref or existing.external_customer_ref,
        subscription_ref=event.subscription_ref or existing.external_subscription_ref,
        period_start=period_start,
        period_end=period_end,
        cancel_at_period_end=event.cancel_at_period_end,
        provisional_period=provisional,
        as_of=as_of,
        session=s,
    )
    return None if changed else "no change"


def apply_payment_event(
    event: PaymentEvent,
    session: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Apply a normalized payment event to the ledger store.

    Idempotent: re-applying the same event leaves the subscription unchanged.

    Returns:
        (user_id, note). user_id is None when the event could not be tied to
        a user; note explains events that changed nothing.
    """
    now = now or _now()
    if event.kind == IGNORED:
        return None, "ignored event type"

    with session_scope(session) as s:
        user_id = _resolve_user(event, s)
        if not user_id:
            logger.warning(
                "[billing] event user unresolved",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return None, "unresolved user"

        if event.customer_ref:
            _link_customer(s, user_id, event.customer_ref)

        existing = get_subscription(user_id, now=now, session=s)
        as_of = event.created or now

        if (
            event.kind == SUBSCRIPTION_UPDATED
            and event.status != SubscriptionStatus.ACTIVE.value
            and existing.status == SubscriptionStatus.ACTIVE
            and _is_other_subscription(event, existing)
        ):
            return user_id, "superseded subscription"

        if event.kind in (CHECKOUT_COMPLETED, SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            plan_id = event.plan_id or (existing.plan_id if _has_paid_row(existing) else None)
            if not plan_id:
                return user_id, "plan not resolvable"
            status = SubscriptionStatus.ACTIVE.value if event.kind == CHECKOUT_COMPLETED else (event.status or "active")
            return user_id, _upsert_from_event(event, user_id, existing, plan_id, status, as_of, s)

        if event.kind == PAYMENT_SUCCEEDED:
            plan_id = event.plan_id or (existing.plan_id if _has_paid_row(existing) else None)
            if not plan_id:
                return user_id, "no paid subscription"
            return user_id, _upsert_from_event(event, user_id, existing, plan_id, "active", as_of, s)

        if not _has_paid_row(existing):
            return user_id, "no paid subscription"

        if _is_other_subscription(event, existing):
            # Event for a subscription the user has since replaced
            return user_id, "superseded subscription"

        if event.kind == SUBSCRIPTION_DELETED:
            changed = set_subscription_status(user_id, SubscriptionStatus.CANCELED, as_of=as_of, session=s)
            return user_id, None if changed else "no change"

        if event.kind == PAYMENT_FAILED:
            changed = set_subscription_status(user_id, SubscriptionStatus.PAST_DUE, as_of=as_of, session=s)
            return user_id, None if changed else "no change"

        return user_id, f"unhandled kind {event.kind}"


def _record_failure(event: PaymentEvent, payload_hash: str, error: Exception) -> None:
    message = f"{type(error).__name__}: {error}"[:2000]
    with get_db_session() as session:
        result = session.execute(
            update(payment_events)
            .where(payment_events.c.event_id == event.event_id)
            .values(error=message, processed=False)
        )
        if result.rowcount == 0:
            session.execute(
                insert(payment_events).values(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    user_id=event.user_id,
                    payload_hash=payload_hash,
                    processed=False,
                    error=message,
                )
            )


def process_webhook_event(headers: Dict[str, str], body: bytes) -> WebhookOutcome:
    """
    Process a payment webhook delivery (idempotent).

    1. Verify signature
    2. Skip if the event id was already processed
    3. Apply state changes and mark processed in one transaction
    4. On failure record the error and re-raise so the provider retries

    Raises:
        BillingDisabledError: Stripe not configured
        InvalidWebhookSignatureError: signature or payload rejected
        ConflictError: a concurrent delivery of the same event is in flight
    """
    provider = _require_provider()

    try:
        event = provider.parse_webhook(headers, body)
    except PaymentWebhookError as e:
        logger.warning("[billing] webhook rejected", extra={"error_code": "invalid_webhook_signature"})
        raise InvalidWebhookSignatureError(str(e)) from e

    payload_hash = hashlib.sha256(body).hexdigest()
    log_extra = {"event_id": event.event_id, "event_type": event.event_type}

    try:
        with get_db_session() as session:
            row = session.execute(
                select(payment_events.c.processed).where(payment_events.c.event_id == event.event_id)
            ).first()
            if row is not None and row.processed:
                logger.info("[billing] duplicate webhook skipped", extra=log_extra)
                return WebhookOutcome(event.event_id, event.event_type, event.kind, DUPLICATE)

            if row is None:
                try:
                    with session.begin_nested():
                        session.execute(
                            insert(payment_events).values(
                                event_id=event.event_id,
                                event_type=event.event_type,
                                payload_hash=payload_hash,
                                processed=False,
                            )
                        )
                except IntegrityError as e:
                    raise ConflictError("Event is already being processed") from e

            user_id, note = apply_payment_event(event, session=session)
            session.execute(
                update(payment_events)
                .where(payment_events.c.event_id == event.event_id)
                .values(processed=True, processed_at=_now(), user_id=user_id, error=note)
            )
    except ConflictError:
        logger.warning("[billing] concurrent webhook delivery", extra=log_extra)
        raise
    except Exception as e:
        logger.error("[billing] webhook processing failed", exc_info=True, extra=log_extra)
        try:
            _record_failure(event, payload_hash, e)
        except StorageUnavailableError:
            logger.error("[billing] could not record webhook failure", extra=log_extra)
        raise

    logger.info(
        "[billing] webhook processed",
        extra={**log_extra, "user_id": user_id, "status": note or PROCESSED},
    )
    return WebhookOutcome(event.event_id, event.event_type, event.kind, PROCESSED, user_id, note)


def sync_subscription(user_id: str, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Pull the user's current subscription from Stripe into the ledger.

    Used after the post-checkout redirect and by the admin sync action.
    Stripe is queried before the caller's session is touched; only the
    ledger write runs inside it.

    Raises:
        BillingDisabledError: Stripe not configured
        NotFoundError: user has no Stripe customer
    """
    provider = _require_provider()
    customer_ref = get_customer_ref(user_id) or get_subscription(user_id).external_customer_ref
    if not customer_ref:
        raise NotFoundError("Customer not found. Complete checkout first.")

    event = provider.fetch_latest_subscription(customer_ref)
    if event is None:
        logger.info("[billing] sync found no subscription", extra={"user_id": user_id})
        return get_billing_status(user_id, session=session)

    event.user_id = user_id
    _, note = apply_payment_event(event, session=session)
    logger.info(
        "[billing] subscription synced",
        extra={"user_id": user_id, "plan_id": event.plan_id, "status": note or PROCESSED},
    )
    return get_billing_status(user_id, session=session)


def get_billing_status(user_id: str, session: Optional[Session] = None) -> Dict[str, Any]:
    """Subscription state as the ledger sees it."""
    with session_scope(session) as s:
        subscription = get_subscription(user_id, session=s)
        customer_ref = get_customer_ref(user_id, session=s)
    has_row = _has_paid_row(subscription)
    return {
        "enabled": billing_enabled(),
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "period_start": subscription.current_period_start,
        "period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "has_customer": has_row or customer_ref is not None,
    }


def list_payment_events(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    processed: Optional[bool] = None,
) -> Tuple[int, List[Dict[str, Any]]]:
    """Recorded webhook deliveries, newest first."""
    with get_db_session() as session:
        query = select(payment_events)
        count_query = select(func.count(payment_events.c.id))
        if user_id:
            query = query.where(payment_events.c.user_id == user_id)
            count_query = count_query.where(payment_events.c.user_id == user_id)
        if processed is not None:
            query = query.where(payment_events.c.processed == processed)
            count_query = count_query.where(payment_events.c.processed == processed)
        total = session.execute(count_query).scalar() or 0
        rows = session.execute(
            query.order_by(desc(payment_events.c.received_at), desc(payment_events.c.id)).offset(skip).limit(limit)
        ).all()
        return total, [dict(row._mapping) for row in rows]


def set_subscription_manually(
    user_id: str,
    plan_id: str,
    status: SubscriptionStatus,
    period_end: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Support override: write a plan/status directly, bypassing Stripe."""
    plan = get_catalog().get_plan(plan_id)
    status = SubscriptionStatus(status)
    if plan.plan_id == FREE_PLAN_ID:
        status = SubscriptionStatus.FREE
    elif status == SubscriptionStatus.FREE:
        raise ValidationError("Status 'free' is only valid for the free plan")

    now = _now()
    with session_scope(session) as s:
        existing = get_subscription(user_id, now=now, session=s)
        period_start, period_end_default = (now, now + DEFAULT_PERIOD)
        if _has_paid_row(existing) and existing.plan_id == plan.plan_id:
            period_start, period_end_default = existing.current_period_start, existing.current_period_end

        upsert_subscription(
            user_id,
            plan.plan_id,
            status,
            customer_ref=existing.external_customer_ref,
            subscription_ref=existing.external_subscription_ref,
            period_start=None if plan.plan_id == FREE_PLAN_ID else period_start,
            period_end=None if plan.plan_id == FREE_PLAN_ID else (period_end or period_end_default),
            cancel_at_period_end=existing.cancel_at_period_end,
            as_of=now,
            session=s,
        )
        logger.info(
            "[billing] subscription set manually",
            extra={"user_id": user_id, "plan_id": plan.plan_id, "status": status.value},
        )
        return get_billing_status(user_id, session=s)
