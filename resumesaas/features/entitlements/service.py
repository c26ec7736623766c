"""
resumesaas/features/entitlements/service.py

Entitlement resolver.

Handles:
- Plan feature membership (pure)
- Access decisions from subscription status, plan and remaining balance
- Free-tier fallback for paid subscriptions that are no longer active

No I/O: callers load the subscription and balance and pass them in.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from resumesaas.features.ledger.store import implicit_free_subscription
from resumesaas.features.plans.catalog import FREE_PLAN_ID, PlanCatalog, get_catalog
from resumesaas.models.credits import Decision
from resumesaas.models.plan import Plan
from resumesaas.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


def has_feature_access(plan: Plan, feature: str) -> bool:
    return feature in plan.entitled_features


def _is_effectively_active(subscription: Subscription, plan: Plan) -> bool:
    # The free tier has no external subscription and is always active
    if plan.plan_id == FREE_PLAN_ID:
        return True
    return subscription.status == SubscriptionStatus.ACTIVE


def can_use(
    subscription: Subscription,
    plan: Plan,
    remaining_credits: Optional[int],
    feature: str,
    credits_required: int,
) -> Decision:
    """
    Decide whether the subscription may use a feature right now.

    Checks run in order: subscription status, feature entitlement, balance.

    Args:
        remaining_credits: Balance left in the current period (None = unlimited).
        credits_required: Cost of this invocation; 0 skips the balance check.
    """
    if not _is_effectively_active(subscription, plan):
        return Decision.DENIED_SUBSCRIPTION_INACTIVE

    if not has_feature_access(plan, feature):
        return Decision.DENIED_NO_FEATURE

    if not plan.is_unlimited and credits_required > 0:
        if remaining_credits is None or remaining_credits < credits_required:
            return Decision.DENIED_INSUFFICIENT_CREDITS

    return Decision.ALLOWED


def resolve_effective_subscription(
    subscription: Subscription,
    feature: Optional[str] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> Tuple[Subscription, Plan]:
    """
    Pick the subscription and plan that govern this feature request.

    A paid subscription that is canceled or past due falls back to the free
    tier for features the free plan includes. For anything else the original
    subscription is returned so can_use reports it as inactive.

    With no feature (balance display) an inactive subscription always falls
    back to the free tier.
    """
    catalog = catalog or get_catalog()
    plan = catalog.get_plan(subscription.plan_id)
    if _is_effectively_active(subscription, plan):
        return subscription, plan

    free_plan = catalog.free_plan
    if feature is None or has_feature_access(free_plan, feature):
        logger.info(
            "[entitlements] inactive subscription, free tier fallback",
            extra={"user_id": subscription.user_id, "plan_id": plan.plan_id, "feature": feature},
        )
        fallback = implicit_free_subscription(subscription.user_id, now)
        fallback = fallback.model_copy(update={"ledger_version": subscription.ledger_version})
        return fallback, free_plan

    return subscription, plan
