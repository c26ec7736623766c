"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/sync: Pull current subscription from Stripe (post-checkout)
- GET  /api/billing/status: Subscription as seen by the ledger
- POST /webhooks/payment: Stripe webhooks
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from resumesaas.core.auth import get_current_user_id
from resumesaas.core.errors import AppError
from resumesaas.features.billing.provider import PaymentProviderError
from resumesaas.features.billing.service import (
    get_billing_status,
    process_webhook_event,
    start_checkout,
    start_portal,
    sync_subscription,
)

router = APIRouter(prefix="/api/billing", tags=["billing"])
webhook_router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_id: str
    success_url: str
    cancel_url: str
    email: Optional[str] = None


class PortalRequest(BaseModel):
    """Request to create portal session."""
    return_url: str


class UrlResponse(BaseModel):
    url: str


class BillingStatusResponse(BaseModel):
    """User billing status."""
    enabled: bool
    plan_id: str
    status: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    cancel_at_period_end: bool
    has_customer: bool


def _provider_failure(e: PaymentProviderError) -> AppError:
    return AppError(str(e), code="payment_provider_error", status_code=502)


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(request: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Plan has no Stripe price
        404: Unknown plan
        502: Stripe API error
    """
    try:
        url = start_checkout(
            user_id=user_id,
            plan_id=request.plan_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            email=request.email,
        )
    except PaymentProviderError as e:
        raise _provider_failure(e) from e
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(request: PortalRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe billing portal session.

    Errors:
        503: Billing disabled
        404: Customer not found (user never checked out)
        502: Stripe API error
    """
    try:
        url = start_portal(user_id=user_id, return_url=request.return_url)
    except PaymentProviderError as e:
        raise _provider_failure(e) from e
    return {"url": url}


@router.post("/sync", response_model=BillingStatusResponse)
def sync(user_id: str = Depends(get_current_user_id)):
    """Refresh the ledger from Stripe after the checkout redirect."""
    try:
        return sync_subscription(user_id)
    except PaymentProviderError as e:
        raise _provider_failure(e) from e


@router.get("/status", response_model=BillingStatusResponse)
def get_status(user_id: str = Depends(get_current_user_id)):
    return get_billing_status(user_id)


@webhook_router.post("/webhooks/payment")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes the event idempotently and updates the
    ledger. Any non-2xx response makes Stripe redeliver.

    Errors:
        400: Invalid signature or payload
        409: Same event being processed concurrently
        503: Billing disabled or storage unavailable
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    outcome = await run_in_threadpool(process_webhook_event, headers, body)
    return {"received": True, "event_id": outcome.event_id, "status": outcome.status}
