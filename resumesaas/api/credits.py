"""
Credit balance and plan catalog routes.

- GET /api/credits: balance for the current billing period
- GET /api/credits/usage: usage breakdown by feature and day
- GET /api/plans: public plan listing with feature costs
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from resumesaas.core.auth import get_current_user_id
from resumesaas.features.credits.service import MAX_BREAKDOWN_DAYS, get_credit_summary, get_usage_breakdown
from resumesaas.features.plans.catalog import get_catalog
from resumesaas.models.credits import CreditSummary

router = APIRouter(prefix="/api", tags=["credits"])


class UsageBreakdownResponse(BaseModel):
    days: int
    total_used: int
    by_feature: Dict[str, int]
    by_day: Dict[str, int]


class PlanItem(BaseModel):
    plan_id: str
    name: str
    monthly_credit_allowance: Optional[int]  # null = unlimited
    monthly_price_cents: int
    features: List[str]


class PlansResponse(BaseModel):
    plans: List[PlanItem]
    feature_costs: Dict[str, int]


@router.get("/credits", response_model=CreditSummary)
def read_credits(user_id: str = Depends(get_current_user_id)):
    """
    Returns:
        {plan, status, totalCredits, usedCredits, remainingCredits,
         unlimited, periodStart, periodEnd}
    """
    return get_credit_summary(user_id)


@router.get("/credits/usage", response_model=UsageBreakdownResponse)
def read_usage(
    days: int = Query(30, ge=1, le=MAX_BREAKDOWN_DAYS),
    user_id: str = Depends(get_current_user_id),
):
    breakdown = get_usage_breakdown(user_id, days=days)
    return UsageBreakdownResponse(
        days=days,
        total_used=breakdown.total_used,
        by_feature=breakdown.by_feature,
        by_day=breakdown.by_day,
    )


@router.get("/plans", response_model=PlansResponse)
def list_plans():
    catalog = get_catalog()
    return PlansResponse(
        plans=[
            PlanItem(
                plan_id=plan.plan_id,
                name=plan.name,
                monthly_credit_allowance=None if plan.is_unlimited else plan.monthly_credit_allowance,
                monthly_price_cents=plan.monthly_price_cents,
                features=sorted(plan.entitled_features),
            )
            for plan in catalog.list_plans()
        ],
        feature_costs=catalog.feature_costs(),
    )
