"""
resumesaas/features/ledger/store.py

Ledger store: durable subscription state and the append-only usage log.

Handles:
- Subscription lookup (implicit free subscription when no row exists)
- Last-write-wins subscription upserts from the payment synchronizer
- Compare-and-swap debits guarded by subscriptions.ledger_version
- Compensating refund events
- Usage aggregation per billing period

Every function accepts an optional session so callers can compose several
operations into one transaction; without one, each call commits on its own.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resumesaas.core.database import session_scope, subscriptions, usage_events
from resumesaas.core.errors import NotFoundError, ValidationError
from resumesaas.features.plans.catalog import FREE_PLAN_ID
from resumesaas.models.subscription import Subscription, SubscriptionStatus
from resumesaas.models.usage_event import UsageEvent

logger = logging.getLogger(__name__)

DEBIT = "debit"
REFUND = "refund"


class LedgerVersionConflict(Exception):
    """A concurrent write changed the subscription row between read and debit."""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return _as_utc(now)


def calendar_month_period(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Billing period of a free-plan user: the current UTC calendar month."""
    now = _normalize_now(now)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def implicit_free_subscription(user_id: str, now: Optional[datetime] = None) -> Subscription:
    start, end = calendar_month_period(now)
    return Subscription(
        user_id=user_id,
        plan_id=FREE_PLAN_ID,
        status=SubscriptionStatus.FREE,
        current_period_start=start,
        current_period_end=end,
    )


def _row_to_subscription(row, now: datetime) -> Subscription:
    period_start = _as_utc(row.current_period_start)
    period_end = _as_utc(row.current_period_end)
    if row.plan_id == FREE_PLAN_ID or period_start is None or period_end is None:
        period_start, period_end = calendar_month_period(now)
    return Subscription(
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=period_start,
        current_period_end=period_end,
        external_customer_ref=row.external_customer_ref,
        external_subscription_ref=row.external_subscription_ref,
        cancel_at_period_end=bool(row.cancel_at_period_end),
        ledger_version=row.ledger_version,
        updated_at=_as_utc(row.updated_at),
    )


def _row_to_usage_event(row) -> UsageEvent:
    return UsageEvent(
        id=row.id,
        user_id=row.user_id,
        feature=row.feature,
        credits=row.credits,
        kind=row.kind,
        refund_of=row.refund_of,
        occurred_at=_as_utc(row.occurred_at),
        period_start=_as_utc(row.period_start),
        period_end=_as_utc(row.period_end),
        metadata=row._mapping["metadata"],
    )


def get_subscription(
    user_id: str,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """Return the user's subscription; never None (implicit free plan)."""
    now = _normalize_now(now)
    with session_scope(session) as s:
        row = s.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).first()
        if row is None:
            return implicit_free_subscription(user_id, now)
        return _row_to_subscription(row, now)


def upsert_subscription(
    user_id: str,
    plan_id: str,
    status: SubscriptionStatus,
    *,
    customer_ref: Optional[str] = None,
    subscription_ref: Optional[str] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    provisional_period: bool = False,
    as_of: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> bool:
    """
    Overwrite the user's subscription state (last write wins on updated_at).

    Args:
        provisional_period: The period is a placeholder (checkout events carry
            none). A later-arriving but older event for the same subscription
            may still replace a provisional period with the real one.
        as_of: Time of the event carrying this state. Writes older than the
            stored updated_at are discarded, apart from the period fix above.

    Returns:
        True if the row changed, False for stale or identical writes.
    """
    as_of = _normalize_now(as_of)
    status = SubscriptionStatus(status)
    values: Dict[str, Any] = {
        "plan_id": plan_id,
        "status": status.value,
        "external_customer_ref": customer_ref,
        "external_subscription_ref": subscription_ref,
        "current_period_start": _as_utc(period_start),
        "current_period_end": _as_utc(period_end),
        "cancel_at_period_end": bool(cancel_at_period_end),
    }

    with session_scope(session) as s:
        row = s.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).first()
        if row is None:
            s.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    ledger_version=1,
                    updated_at=as_of,
                    period_provisional=bool(provisional_period),
                    **values,
                )
            )
            logger.info(
                "[ledger] subscription created",
                extra={"user_id": user_id, "plan_id": plan_id, "status": status.value},
            )
            return True

        stored_at = _as_utc(row.updated_at)
        if stored_at is not None and stored_at > as_of:
            if _confirms_provisional_period(row, values, provisional_period):
                return _confirm_period(s, user_id, values)
            logger.warning(
                "[ledger] stale subscription write discarded",
                extra={"user_id": user_id, "plan_id": plan_id, "status": status.value},
            )
            return False

        current = {
            "plan_id": row.plan_id,
            "status": row.status,
            "external_customer_ref": row.external_customer_ref,
            "external_subscription_ref": row.external_subscription_ref,
            "current_period_start": _as_utc(row.current_period_start),
            "current_period_end": _as_utc(row.current_period_end),
            "cancel_at_period_end": bool(row.cancel_at_period_end),
        }
        same_period = (
            current["current_period_start"] == values["current_period_start"]
            and current["current_period_end"] == values["current_period_end"]
        )
        # Re-sending the stored period keeps its provisional flag
        provisional = bool(provisional_period) or (same_period and bool(row.period_provisional))
        if current == values and provisional == bool(row.period_provisional):
            return False

        s.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(
                ledger_version=subscriptions.c.ledger_version + 1,
                updated_at=as_of,
                period_provisional=provisional,
                **values,
            )
        )
        logger.info(
            "[ledger] subscription updated",
            extra={"user_id": user_id, "plan_id": plan_id, "status": status.value},
        )
        return True


def _confirms_provisional_period(row, values: Dict[str, Any], provisional_period: bool) -> bool:
    return bool(
        row.period_provisional
        and not provisional_period
        and values["current_period_start"] is not None
        and values["current_period_end"] is not None
        and values["external_subscription_ref"] is not None
        and values["external_subscription_ref"] == row.external_subscription_ref
    )


def _confirm_period(s: Session, user_id: str, values: Dict[str, Any]) -> bool:
    # Period only: status and plan from the newer write stand
    s.execute(
        update(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .values(
            current_period_start=values["current_period_start"],
            current_period_end=values["current_period_end"],
            period_provisional=False,
            ledger_version=subscriptions.c.ledger_version + 1,
        )
    )
    logger.info(
        "[ledger] provisional period replaced",
        extra={"user_id": user_id, "subscription_ref": values["external_subscription_ref"]},
    )
    return True


def set_subscription_status(
    user_id: str,
    status: SubscriptionStatus,
    *,
    as_of: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> bool:
    """Change only the status of an existing subscription (LWW on updated_at)."""
    as_of = _normalize_now(as_of)
    status = SubscriptionStatus(status)
    with session_scope(session) as s:
        row = s.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).first()
        if row is None:
            logger.warning("[ledger] status change for unknown subscription", extra={"user_id": user_id, "status": status.value})
            return False
        stored_at = _as_utc(row.updated_at)
        if stored_at is not None and stored_at > as_of:
            logger.warning("[ledger] stale status write discarded", extra={"user_id": user_id, "status": status.value})
            return False
        if row.status == status.value:
            return False
        s.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(
                status=status.value,
                ledger_version=subscriptions.c.ledger_version + 1,
                updated_at=as_of,
            )
        )
        logger.info("[ledger] subscription status changed", extra={"user_id": user_id, "status": status.value})
        return True


def _validate_credits(credits: Any) -> int:
    if isinstance(credits, bool) or not isinstance(credits, int) or credits < 1:
        raise ValidationError(f"credits must be a positive integer, got {credits!r}")
    return credits


def append_usage_event(
    user_id: str,
    feature: str,
    credits: int,
    period_start: datetime,
    period_end: datetime,
    *,
    expected_version: Optional[int],
    now: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    session: Optional[Session] = None,
) -> UsageEvent:
    """
    Append a debit, guarded by a compare-and-swap on ledger_version.

    Must run in the same transaction that read the balance. expected_version
    is the version seen at read time (None when the subscription was
    implicit, in which case the free row is created here).

    Raises:
        LedgerVersionConflict: another writer got there first; retry.
    """
    credits = _validate_credits(credits)
    occurred_at = _normalize_now(now)

    with session_scope(session) as s:
        if expected_version is None:
            try:
                with s.begin_nested():
                    s.execute(
                        insert(subscriptions).values(
                            user_id=user_id,
                            plan_id=FREE_PLAN_ID,
                            status=SubscriptionStatus.FREE.value,
                            ledger_version=1,
                            updated_at=None,
                        )
                    )
            except IntegrityError as exc:
                raise LedgerVersionConflict(user_id) from exc
        else:
            result = s.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.user_id == user_id,
                        subscriptions.c.ledger_version == expected_version,
                    )
                )
                .values(ledger_version=expected_version + 1)
            )
            if result.rowcount != 1:
                raise LedgerVersionConflict(user_id)

        inserted = s.execute(
            insert(usage_events).values(
                user_id=user_id,
                feature=feature,
                credits=credits,
                kind=DEBIT,
                occurred_at=occurred_at,
                period_start=_as_utc(period_start),
                period_end=_as_utc(period_end),
                metadata=metadata,
            )
        )
        event_id = inserted.inserted_primary_key[0]

    return UsageEvent(
        id=event_id,
        user_id=user_id,
        feature=feature,
        credits=credits,
        kind=DEBIT,
        occurred_at=occurred_at,
        period_start=_as_utc(period_start),
        period_end=_as_utc(period_end),
        metadata=metadata,
    )


def get_usage_event(event_id: int, session: Optional[Session] = None) -> Optional[UsageEvent]:
    with session_scope(session) as s:
        row = s.execute(select(usage_events).where(usage_events.c.id == event_id)).first()
        return _row_to_usage_event(row) if row else None


def _find_refund(s: Session, event_id: int) -> Optional[UsageEvent]:
    row = s.execute(select(usage_events).where(usage_events.c.refund_of == event_id)).first()
    return _row_to_usage_event(row) if row else None


def append_refund_event(
    usage_event_id: int,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> UsageEvent:
    """
    Append a compensating event for a debit (idempotent per debit).

    The refund carries the debit's period so it restores exactly the balance
    the debit consumed.
    """
    occurred_at = _normalize_now(now)
    with session_scope(session) as s:
        row = s.execute(select(usage_events).where(usage_events.c.id == usage_event_id)).first()
        if row is None:
            raise NotFoundError(f"Usage event {usage_event_id} not found")
        original = _row_to_usage_event(row)
        if original.kind != DEBIT:
            raise ValidationError(f"Usage event {usage_event_id} is not a debit")

        existing = _find_refund(s, usage_event_id)
        if existing is not None:
            return existing

        metadata = {"reason": reason} if reason else None
        try:
            with s.begin_nested():
                inserted = s.execute(
                    insert(usage_events).values(
                        user_id=original.user_id,
                        feature=original.feature,
                        credits=-original.credits,
                        kind=REFUND,
                        refund_of=original.id,
                        occurred_at=occurred_at,
                        period_start=original.period_start,
                        period_end=original.period_end,
                        metadata=metadata,
                    )
                )
        except IntegrityError:
            # Concurrent refund of the same debit won
            return _find_refund(s, usage_event_id)

        refund_id = inserted.inserted_primary_key[0]
        logger.info(
            "[ledger] usage refunded",
            extra={"user_id": original.user_id, "feature": original.feature, "usage_event_id": original.id},
        )
        return UsageEvent(
            id=refund_id,
            user_id=original.user_id,
            feature=original.feature,
            credits=-original.credits,
            kind=REFUND,
            refund_of=original.id,
            occurred_at=occurred_at,
            period_start=original.period_start,
            period_end=original.period_end,
            metadata=metadata,
        )


def sum_usage(
    user_id: str,
    period_start: datetime,
    period_end: datetime,
    session: Optional[Session] = None,
) -> int:
    """
    Net credits consumed by events belonging to the given billing period.

    A period is identified by its start: only events stamped with exactly
    this period_start count. Events from another period that began inside
    [period_start, period_end) (a paid period before a cancellation, say)
    belong to that period and are excluded. period_end is not part of the
    match.
    """
    with session_scope(session) as s:
        total = s.execute(
            select(func.coalesce(func.sum(usage_events.c.credits), 0)).where(
                and_(
                    usage_events.c.user_id == user_id,
                    usage_events.c.period_start == _as_utc(period_start),
                )
            )
        ).scalar_one()
        return int(total)


def list_usage_events(
    user_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> List[UsageEvent]:
    """Usage events for a user in insertion order (occurred_at, id)."""
    with session_scope(session) as s:
        query = select(usage_events).where(usage_events.c.user_id == user_id)
        if since is not None:
            query = query.where(usage_events.c.occurred_at >= _as_utc(since))
        if until is not None:
            query = query.where(usage_events.c.occurred_at < _as_utc(until))
        rows = s.execute(query.order_by(usage_events.c.occurred_at, usage_events.c.id)).all()
        return [_row_to_usage_event(row) for row in rows]


def find_user_by_external_refs(
    customer_ref: Optional[str] = None,
    subscription_ref: Optional[str] = None,
    session: Optional[Session] = None,
) -> Optional[str]:
    clauses = []
    if subscription_ref:
        clauses.append(subscriptions.c.external_subscription_ref == subscription_ref)
    if customer_ref:
        clauses.append(subscriptions.c.external_customer_ref == customer_ref)
    if not clauses:
        return None
    with session_scope(session) as s:
        row = s.execute(select(subscriptions.c.user_id).where(or_(*clauses)).limit(1)).first()
        return row[0] if row else None


def referenced_plan_ids(session: Optional[Session] = None) -> List[str]:
    with session_scope(session) as s:
        rows = s.execute(select(subscriptions.c.plan_id).distinct()).all()
        return [row[0] for row in rows]
