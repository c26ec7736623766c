"""
resumesaas/features/credits/service.py

Credit accounting service.

Handles:
- Atomic check-and-consume (balance check + debit in one transaction)
- Bounded retries when a concurrent writer wins the ledger_version race
- Compensating refunds
- Balance summaries and usage breakdowns for the credits endpoints
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from resumesaas.core.config import settings
from resumesaas.core.database import get_db_session, session_scope
from resumesaas.core.errors import ConcurrencyConflictError, ValidationError
from resumesaas.features.entitlements.service import can_use, resolve_effective_subscription
from resumesaas.features.ledger.store import (
    LedgerVersionConflict,
    append_refund_event,
    append_usage_event,
    get_subscription,
    list_usage_events,
    sum_usage,
)
from resumesaas.features.plans.catalog import PlanCatalog, get_catalog
from resumesaas.models.credits import ConsumeResult, CreditSummary, Decision, UsageBreakdown

logger = logging.getLogger(__name__)

MAX_BREAKDOWN_DAYS = 365


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _validate_credits_required(credits_required: Any) -> int:
    if isinstance(credits_required, bool) or not isinstance(credits_required, int):
        raise ValidationError(f"credits_required must be an integer, got {credits_required!r}")
    if credits_required < 1:
        raise ValidationError("credits_required must be at least 1")
    return credits_required


def _display_remaining(remaining: Optional[int]) -> Optional[int]:
    # A downgrade mid-period can leave usage above the new allowance
    if remaining is None:
        return None
    return max(0, remaining)


def _attempt_consume(
    session: Session,
    user_id: str,
    feature: str,
    required: int,
    now: datetime,
    metadata: Optional[Dict[str, Any]],
    catalog: PlanCatalog,
) -> ConsumeResult:
    stored = get_subscription(user_id, now=now, session=session)
    subscription, plan = resolve_effective_subscription(stored, feature, catalog, now)

    used = sum_usage(
        user_id,
        subscription.current_period_start,
        subscription.current_period_end,
        session=session,
    )
    remaining = _display_remaining(plan.remaining(used))
    decision = can_use(subscription, plan, remaining, feature, required)

    if decision != Decision.ALLOWED:
        return ConsumeResult(
            success=False,
            reason=decision,
            remaining=remaining,
            required=required,
            plan_id=plan.plan_id,
        )

    if required == 0:
        return ConsumeResult(
            success=True,
            reason=decision,
            remaining=remaining,
            required=0,
            plan_id=plan.plan_id,
        )

    event = append_usage_event(
        user_id,
        feature,
        required,
        subscription.current_period_start,
        subscription.current_period_end,
        expected_version=subscription.ledger_version,
        now=now,
        metadata=metadata,
        session=session,
    )
    return ConsumeResult(
        success=True,
        reason=decision,
        remaining=None if remaining is None else remaining - required,
        required=required,
        plan_id=plan.plan_id,
        usage_event_id=event.id,
    )


def check_and_consume(
    user_id: str,
    feature: str,
    credits_required: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    catalog: Optional[PlanCatalog] = None,
) -> ConsumeResult:
    """
    Check entitlement and balance, then debit atomically.

    Denials have no side effect. An allowed request appends exactly one
    usage event (none for unmetered features) in the same transaction that
    read the balance.

    Args:
        credits_required: Override the catalog cost (must be >= 1).

    Raises:
        ValidationError: unknown feature or invalid credits_required.
        ConcurrencyConflictError: lost the race on every attempt.
        StorageUnavailableError: ledger store unreachable.
    """
    catalog = catalog or get_catalog()
    if credits_required is None:
        required = catalog.feature_cost(feature)
    else:
        catalog.feature_cost(feature)
        required = _validate_credits_required(credits_required)
    now = _normalize_now(now)

    max_attempts = 1 + max(0, settings.CREDIT_MAX_RETRIES)
    for attempt in range(1, max_attempts + 1):
        try:
            with get_db_session() as session:
                result = _attempt_consume(session, user_id, feature, required, now, metadata, catalog)
        except LedgerVersionConflict:
            logger.warning(
                "[credits] ledger version conflict",
                extra={"user_id": user_id, "feature": feature, "attempt": attempt},
            )
            continue

        logger.info(
            "[credits] consume decision",
            extra={
                "user_id": user_id,
                "feature": feature,
                "plan_id": result.plan_id,
                "credits": required,
                "remaining": result.remaining,
                "decision": result.reason.value,
                "usage_event_id": result.usage_event_id,
                "attempt": attempt,
            },
        )
        return result

    logger.error(
        "[credits] retries exhausted",
        extra={"user_id": user_id, "feature": feature, "attempt": max_attempts},
    )
    raise ConcurrencyConflictError("Too many concurrent credit updates")


def get_credit_summary(
    user_id: str,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> CreditSummary:
    """Balance for the user's current billing period (always derived)."""
    now = _normalize_now(now)
    catalog = get_catalog()
    with session_scope(session) as s:
        stored = get_subscription(user_id, now=now, session=s)
        subscription, plan = resolve_effective_subscription(stored, None, catalog, now)
        used = sum_usage(
            user_id,
            subscription.current_period_start,
            subscription.current_period_end,
            session=s,
        )

    return CreditSummary(
        plan=plan.plan_id,
        status=stored.status.value,
        total_credits=None if plan.is_unlimited else plan.monthly_credit_allowance,
        used_credits=used,
        remaining_credits=_display_remaining(plan.remaining(used)),
        unlimited=plan.is_unlimited,
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
    )


def refund(
    usage_event_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Optional[int]:
    """
    Reverse a debit with a compensating event.

    Idempotent: refunding the same debit twice appends one event.

    Returns:
        The user's remaining credits after the refund (None = unlimited).
    """
    event = append_refund_event(usage_event_id, reason=reason, now=now, session=session)
    summary = get_credit_summary(event.user_id, now=now, session=session)
    logger.info(
        "[credits] refund applied",
        extra={
            "user_id": event.user_id,
            "feature": event.feature,
            "credits": event.credits,
            "usage_event_id": usage_event_id,
            "remaining": summary.remaining_credits,
        },
    )
    return summary.remaining_credits


def get_usage_breakdown(user_id: str, days: int = 30, now: Optional[datetime] = None) -> UsageBreakdown:
    """Net credits used over the last `days` days, by feature and by UTC day."""
    if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_BREAKDOWN_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_BREAKDOWN_DAYS}")
    now = _normalize_now(now)
    events = list_usage_events(user_id, since=now - timedelta(days=days), until=now + timedelta(seconds=1))

    by_feature: Dict[str, int] = defaultdict(int)
    by_day: Dict[str, int] = defaultdict(int)
    for event in events:
        by_feature[event.feature] += event.credits
        by_day[event.occurred_at.date().isoformat()] += event.credits

    return UsageBreakdown(
        total_used=sum(by_feature.values()),
        by_feature=dict(by_feature),
        by_day=dict(sorted(by_day.items())),
    )
