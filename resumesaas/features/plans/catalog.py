"""
resumesaas/features/plans/catalog.py

Plan catalog.

Handles:
- Static plan definitions (free, basic, standard, pro)
- Per-feature credit costs
- Stripe price <-> plan mapping
- Startup validation of plan ids referenced by the ledger
"""

from typing import Dict, Iterable, List, Mapping, Optional

from resumesaas.core.config import settings
from resumesaas.core.errors import CatalogConfigurationError, PlanNotFoundError, ValidationError
from resumesaas.models.plan import Plan

FREE_PLAN_ID = "free"

RESUME_GENERATION = "resume_generation"
JOB_TAILORING = "job_tailoring"
COVER_LETTER_GENERATION = "cover_letter_generation"
LINKEDIN_OPTIMIZATION = "linkedin_optimization"
SALARY_ANALYSIS = "salary_analysis"
MOCK_INTERVIEW = "mock_interview"
PERSONAL_BRAND_STRATEGY = "personal_brand_strategy"
AI_SUGGESTIONS = "ai_suggestions"

# Credits charged per invocation. 0 = entitlement-checked but unmetered.
FEATURE_CREDIT_COSTS: Dict[str, int] = {
    RESUME_GENERATION: 1,
    JOB_TAILORING: 1,
    COVER_LETTER_GENERATION: 1,
    LINKEDIN_OPTIMIZATION: 4,
    SALARY_ANALYSIS: 1,
    MOCK_INTERVIEW: 1,
    PERSONAL_BRAND_STRATEGY: 1,
    AI_SUGGESTIONS: 0,
}

_FREE_FEATURES = [RESUME_GENERATION, COVER_LETTER_GENERATION, AI_SUGGESTIONS]
_BASIC_FEATURES = _FREE_FEATURES + [JOB_TAILORING, SALARY_ANALYSIS]
_STANDARD_FEATURES = _BASIC_FEATURES + [LINKEDIN_OPTIMIZATION, MOCK_INTERVIEW]
_PRO_FEATURES = _STANDARD_FEATURES + [PERSONAL_BRAND_STRATEGY]

DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "monthly_credit_allowance": 3,
        "monthly_price_cents": 0,
        "entitled_features": _FREE_FEATURES,
    },
    "basic": {
        "name": "Basic",
        "monthly_credit_allowance": 10,
        "monthly_price_cents": 999,
        "entitled_features": _BASIC_FEATURES,
    },
    "standard": {
        "name": "Standard",
        "monthly_credit_allowance": 50,
        "monthly_price_cents": 1999,
        "entitled_features": _STANDARD_FEATURES,
    },
    "pro": {
        "name": "Pro",
        "monthly_credit_allowance": 200,
        "monthly_price_cents": 4999,
        "entitled_features": _PRO_FEATURES,
    },
}


class PlanCatalog:
    """Read-only plan and feature-cost lookup."""

    def __init__(self, plans: Iterable[Plan], feature_costs: Mapping[str, int]):
        self._plans: Dict[str, Plan] = {plan.plan_id: plan for plan in plans}
        self._costs: Dict[str, int] = dict(feature_costs)
        if FREE_PLAN_ID not in self._plans:
            raise CatalogConfigurationError("Plan catalog must define the 'free' plan")
        for plan in self._plans.values():
            unknown = sorted(set(plan.entitled_features) - set(self._costs))
            if unknown:
                raise CatalogConfigurationError(
                    f"Plan {plan.plan_id} entitles features without a credit cost: {', '.join(unknown)}"
                )
        bad_costs = [f for f, cost in self._costs.items() if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0]
        if bad_costs:
            raise CatalogConfigurationError(f"Invalid credit costs for: {', '.join(sorted(bad_costs))}")

    @classmethod
    def from_config(cls, config: Mapping[str, Mapping], feature_costs: Mapping[str, int]) -> "PlanCatalog":
        plans = [
            Plan(
                plan_id=plan_id,
                name=entry["name"],
                monthly_credit_allowance=entry["monthly_credit_allowance"],
                monthly_price_cents=entry.get("monthly_price_cents", 0),
                entitled_features=frozenset(entry.get("entitled_features", ())),
            )
            for plan_id, entry in config.items()
        ]
        return cls(plans, feature_costs)

    @property
    def free_plan(self) -> Plan:
        return self._plans[FREE_PLAN_ID]

    def get_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Unknown plan: {plan_id}")
        return plan

    def list_plans(self) -> List[Plan]:
        return sorted(self._plans.values(), key=lambda p: p.monthly_price_cents)

    def feature_cost(self, feature: str) -> int:
        if feature not in self._costs:
            raise ValidationError(f"Unknown feature: {feature}")
        return self._costs[feature]

    def feature_costs(self) -> Dict[str, int]:
        return dict(self._costs)

    def validate_references(self, plan_ids: Iterable[str]) -> None:
        """Fail fast when the ledger references plans this catalog lacks."""
        unknown = sorted({pid for pid in plan_ids if pid not in self._plans})
        if unknown:
            raise CatalogConfigurationError(
                f"Ledger references unknown plan ids: {', '.join(unknown)}"
            )


_catalog = PlanCatalog.from_config(DEFAULT_PLANS, FEATURE_CREDIT_COSTS)


def get_catalog() -> PlanCatalog:
    return _catalog


def get_plan(plan_id: str) -> Plan:
    return _catalog.get_plan(plan_id)


def _price_map() -> Dict[str, Optional[str]]:
    return {
        "basic": settings.STRIPE_PRICE_BASIC,
        "standard": settings.STRIPE_PRICE_STANDARD,
        "pro": settings.STRIPE_PRICE_PRO,
    }


def price_for_plan(plan_id: str) -> Optional[str]:
    """Map internal plan ID to Stripe price ID."""
    return _price_map().get(plan_id)


def plan_for_price(price_id: Optional[str]) -> Optional[str]:
    """Map Stripe price ID to internal plan ID."""
    if not price_id:
        return None
    for plan_id, configured in _price_map().items():
        if configured and configured == price_id:
            return plan_id
    return None
