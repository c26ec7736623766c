"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Every mutation writes a billing_admin_audit row.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from resumesaas.core.admin_auth import AdminActor, create_audit_log, require_admin
from resumesaas.core.database import get_db_session
from resumesaas.core.errors import AppError
from resumesaas.features.billing.provider import PaymentProviderError
from resumesaas.features.billing.service import (
    list_payment_events,
    set_subscription_manually,
    sync_subscription,
)
from resumesaas.features.credits.service import refund
from resumesaas.features.ledger.store import get_usage_event
from resumesaas.models.subscription import SubscriptionStatus

logger = logging.getLogger("resumesaas.admin_billing")

router = APIRouter(prefix="/v1/admin/billing", tags=["admin-billing"])


class SubscriptionSetRequest(BaseModel):
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    period_end: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(BaseModel):
    usage_event_id: int
    remaining: Optional[int]
    audit_id: int


class PaymentEventItem(BaseModel):
    event_id: str
    event_type: str
    user_id: Optional[str]
    processed: bool
    processed_at: Optional[datetime]
    error: Optional[str]
    received_at: datetime


class PaymentEventListResponse(BaseModel):
    total: int
    events: List[PaymentEventItem]
    has_more: bool


@router.post("/subscriptions/{user_id}/sync")
def admin_sync_subscription(user_id: str, actor: AdminActor = Depends(require_admin)):
    """Pull the user's subscription from Stripe into the ledger."""
    logger.info("[admin] subscription sync requested", extra={"user_id": user_id})
    try:
        with get_db_session() as session:
            status = sync_subscription(user_id, session=session)
            audit_id = create_audit_log(
                session,
                actor,
                "sync_subscription",
                target_user_id=user_id,
                payload={"plan_id": status["plan_id"], "status": status["status"]},
            )
    except PaymentProviderError as e:
        raise AppError(str(e), code="payment_provider_error", status_code=502) from e
    return {**status, "audit_id": audit_id}


@router.put("/subscriptions/{user_id}")
def admin_set_subscription(
    user_id: str,
    req: SubscriptionSetRequest,
    actor: AdminActor = Depends(require_admin),
):
    """Support override of a user's plan/status (does not touch Stripe)."""
    with get_db_session() as session:
        status = set_subscription_manually(user_id, req.plan_id, req.status, req.period_end, session=session)
        audit_id = create_audit_log(
            session,
            actor,
            "set_subscription",
            target_user_id=user_id,
            payload={"plan_id": req.plan_id, "status": req.status.value, "reason": req.reason},
        )
    return {**status, "audit_id": audit_id}


@router.post("/usage/{event_id}/refund", response_model=RefundResponse)
def admin_refund_usage(
    event_id: int,
    req: Optional[RefundRequest] = None,
    actor: AdminActor = Depends(require_admin),
):
    """Append a compensating refund for a debit (idempotent)."""
    reason = (req.reason if req else None) or "admin refund"
    with get_db_session() as session:
        remaining = refund(event_id, reason=reason, session=session)
        usage = get_usage_event(event_id, session=session)
        audit_id = create_audit_log(
            session,
            actor,
            "refund_usage",
            target_user_id=usage.user_id if usage else None,
            target_resource=f"usage_event:{event_id}",
            payload={"reason": reason},
        )
    return RefundResponse(usage_event_id=event_id, remaining=remaining, audit_id=audit_id)


@router.get("/events", response_model=PaymentEventListResponse)
def admin_list_events(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    user_id: Optional[str] = Query(None),
    processed: Optional[bool] = Query(None),
    actor: AdminActor = Depends(require_admin),
):
    """List recorded webhook deliveries, newest first."""
    total, rows = list_payment_events(skip=skip, limit=limit, user_id=user_id, processed=processed)
    return PaymentEventListResponse(
        total=total,
        events=[PaymentEventItem(**{k: row[k] for k in PaymentEventItem.model_fields}) for row in rows],
        has_more=(skip + limit) < total,
    )
