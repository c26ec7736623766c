"""Tests for the entitlement resolver (pure decisions)."""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from resumesaas.features.entitlements.service import (
    can_use,
    has_feature_access,
    resolve_effective_subscription,
)
from resumesaas.features.ledger.store import implicit_free_subscription
from resumesaas.features.plans.catalog import get_catalog
from resumesaas.models.credits import Decision
from resumesaas.models.plan import UNLIMITED, Plan
from resumesaas.models.subscription import Subscription, SubscriptionStatus

NOW = datetime(2026, 5, 10, tzinfo=timezone.utc)


def _sub(plan_id="pro", status=SubscriptionStatus.ACTIVE, version=3):
    return Subscription(
        user_id="u1",
        plan_id=plan_id,
        status=status,
        current_period_start=NOW - timedelta(days=5),
        current_period_end=NOW + timedelta(days=25),
        ledger_version=version,
    )


def test_has_feature_access():
    catalog = get_catalog()
    assert has_feature_access(catalog.get_plan("free"), "resume_generation")
    assert not has_feature_access(catalog.get_plan("free"), "job_tailoring")
    for feature in catalog.get_plan("pro").entitled_features:
        assert has_feature_access(catalog.get_plan("pro"), feature)


def test_allowed_with_enough_credits():
    plan = get_catalog().get_plan("basic")
    assert can_use(_sub("basic"), plan, 10, "job_tailoring", 1) == Decision.ALLOWED


def test_denied_when_feature_not_in_plan():
    plan = get_catalog().get_plan("basic")
    assert can_use(_sub("basic"), plan, 10, "personal_brand_strategy", 1) == Decision.DENIED_NO_FEATURE


def test_denied_when_balance_too_low():
    plan = get_catalog().get_plan("standard")
    assert can_use(_sub("standard"), plan, 3, "linkedin_optimization", 4) == Decision.DENIED_INSUFFICIENT_CREDITS


def test_status_checked_before_feature_and_balance():
    plan = get_catalog().get_plan("pro")
    sub = _sub("pro", SubscriptionStatus.PAST_DUE)
    assert can_use(sub, plan, 0, "unknown_feature", 99) == Decision.DENIED_SUBSCRIPTION_INACTIVE


def test_free_plan_is_always_active():
    plan = get_catalog().free_plan
    sub = implicit_free_subscription("u1", NOW)
    assert can_use(sub, plan, 3, "resume_generation", 1) == Decision.ALLOWED


@pytest.mark.parametrize("used_before", [0, 5, 100])
def test_zero_allowance_always_denies(used_before):
    plan = Plan(
        plan_id="trial",
        name="Trial",
        monthly_credit_allowance=0,
        entitled_features=frozenset({"resume_generation"}),
    )
    remaining = plan.remaining(used_before)
    assert can_use(_sub("trial"), plan, remaining, "resume_generation", 1) == Decision.DENIED_INSUFFICIENT_CREDITS


def test_unlimited_plan_skips_balance_check():
    plan = Plan(
        plan_id="unlimited",
        name="Unlimited",
        monthly_credit_allowance=UNLIMITED,
        entitled_features=frozenset({"resume_generation"}),
    )
    assert plan.remaining(10_000) is None
    assert can_use(_sub("unlimited"), plan, None, "resume_generation", 50) == Decision.ALLOWED


@pytest.mark.parametrize("allowance", [-2, -100])
def test_negative_allowance_other_than_unlimited_rejected(allowance):
    with pytest.raises(ValidationError):
        Plan(plan_id="broken", name="Broken", monthly_credit_allowance=allowance)


def test_unmetered_feature_ignores_balance():
    plan = get_catalog().free_plan
    sub = implicit_free_subscription("u1", NOW)
    assert can_use(sub, plan, 0, "ai_suggestions", 0) == Decision.ALLOWED


def test_active_subscription_resolves_to_itself():
    sub = _sub("pro")
    effective, plan = resolve_effective_subscription(sub, "mock_interview", now=NOW)
    assert effective is sub
    assert plan.plan_id == "pro"


def test_canceled_paid_subscription_falls_back_to_free_for_free_features():
    sub = _sub("pro", SubscriptionStatus.CANCELED)
    effective, plan = resolve_effective_subscription(sub, "resume_generation", now=NOW)
    assert plan.plan_id == "free"
    assert effective.ledger_version == 3
    assert effective.current_period_start == datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert can_use(effective, plan, 3, "resume_generation", 1) == Decision.ALLOWED


def test_canceled_paid_subscription_keeps_paid_plan_for_paid_features():
    sub = _sub("pro", SubscriptionStatus.CANCELED)
    effective, plan = resolve_effective_subscription(sub, "personal_brand_strategy", now=NOW)
    assert effective is sub
    assert can_use(effective, plan, 200, "personal_brand_strategy", 1) == Decision.DENIED_SUBSCRIPTION_INACTIVE


def test_balance_view_of_inactive_subscription_is_free():
    sub = _sub("standard", SubscriptionStatus.PAST_DUE)
    _, plan = resolve_effective_subscription(sub, None, now=NOW)
    assert plan.plan_id == "free"
