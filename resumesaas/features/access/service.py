"""
resumesaas/features/access/service.py

Access facade: the only entry point feature-serving code uses.

Handles:
- Entitlement + credit check with atomic debit (via the credit service)
- 402 denials carrying balance, plan and an upgrade path
- Compensating refunds when the feature work fails after the debit
- The non-production credit bypass flag
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from resumesaas.core.config import is_production, settings
from resumesaas.core.errors import FeatureExecutionError, PaymentRequiredError
from resumesaas.features.credits.service import check_and_consume, refund
from resumesaas.features.ledger.store import get_subscription
from resumesaas.features.plans.catalog import get_catalog
from resumesaas.models.credits import ConsumeResult, Decision

logger = logging.getLogger(__name__)

T = TypeVar("T")

DENIAL_MESSAGES = {
    Decision.DENIED_NO_FEATURE: "Your plan does not include this feature. Upgrade to unlock it.",
    Decision.DENIED_INSUFFICIENT_CREDITS: "Not enough credits left this period. Upgrade your plan for more.",
    Decision.DENIED_SUBSCRIPTION_INACTIVE: "Your subscription is not active. Update your billing details to continue.",
}


def bypass_enabled() -> bool:
    # Production never honors the flag, whatever the environment says.
    return bool(settings.CREDIT_BYPASS_ENABLED) and not is_production()


def upgrade_url() -> str:
    return f"{settings.APP_URL.rstrip('/')}/pricing"


def require_feature(
    user_id: str,
    feature: str,
    credits_required: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ConsumeResult:
    """Check and debit credits for one feature invocation."""
    if bypass_enabled():
        required = credits_required if credits_required is not None else get_catalog().feature_cost(feature)
        logger.warning(
            "[access] credit bypass active, no debit recorded",
            extra={"user_id": user_id, "feature": feature, "decision": "bypassed"},
        )
        return ConsumeResult(
            success=True,
            reason=Decision.ALLOWED,
            remaining=None,
            required=required,
            plan_id=get_subscription(user_id).plan_id,
            bypassed=True,
        )
    return check_and_consume(user_id, feature, credits_required, metadata=metadata)


def raise_for_denial(result: ConsumeResult) -> None:
    if result.success:
        return
    raise PaymentRequiredError(
        DENIAL_MESSAGES.get(result.reason, "Access denied"),
        code=result.reason.value,
        details={
            "remaining": result.remaining,
            "required": result.required,
            "plan": result.plan_id,
            "reason": result.reason.value,
            "upgrade_url": upgrade_url(),
        },
    )


def run_metered(
    user_id: str,
    feature: str,
    work: Callable[[], T],
    credits_required: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[T, ConsumeResult]:
    """
    Debit credits, then run the feature work.

    Raises:
        PaymentRequiredError: denied by plan, balance or subscription status.
        FeatureExecutionError: work() failed; the debit was refunded.
    """
    result = require_feature(user_id, feature, credits_required, metadata)
    raise_for_denial(result)

    try:
        output = work()
    except Exception as exc:
        logger.error(
            "[access] feature work failed after debit",
            exc_info=True,
            extra={"user_id": user_id, "feature": feature, "usage_event_id": result.usage_event_id},
        )
        if result.usage_event_id is not None:
            try:
                refund(result.usage_event_id, reason=f"{feature} failed: {type(exc).__name__}")
            except Exception:
                logger.error(
                    "[access] refund failed",
                    exc_info=True,
                    extra={"user_id": user_id, "feature": feature, "usage_event_id": result.usage_event_id},
                )
                raise
        raise FeatureExecutionError(
            "The request failed and no credits were charged. Please try again.",
            details={"refunded": result.usage_event_id is not None},
        ) from exc

    return output, result
