"""Tests for check_and_consume, refunds and balance summaries."""
from datetime import datetime, timedelta, timezone

import pytest

from resumesaas.core.errors import ConcurrencyConflictError, StorageUnavailableError, ValidationError
from resumesaas.features.credits import service as credits_service
from resumesaas.features.credits.service import (
    check_and_consume,
    get_credit_summary,
    get_usage_breakdown,
    refund,
)
from resumesaas.features.ledger import store
from resumesaas.features.ledger.store import (
    LedgerVersionConflict,
    list_usage_events,
    set_subscription_status,
    sum_usage,
    upsert_subscription,
)
from resumesaas.models.credits import Decision
from resumesaas.models.subscription import SubscriptionStatus


def _now():
    return datetime.now(timezone.utc)


def _subscribe(user_id, plan_id, days_in=1):
    now = _now()
    upsert_subscription(
        user_id,
        plan_id,
        SubscriptionStatus.ACTIVE,
        customer_ref=f"cus_{user_id}",
        subscription_ref=f"sub_{user_id}",
        period_start=now - timedelta(days=days_in),
        period_end=now + timedelta(days=30 - days_in),
        as_of=now - timedelta(minutes=1),
    )


def test_basic_plan_scenario():
    _subscribe("alice", "basic")

    first = check_and_consume("alice", "resume_generation", 1)
    assert first.success is True
    assert first.remaining == 9
    assert first.usage_event_id is not None

    second = check_and_consume("alice", "resume_generation", 10)
    assert second.success is False
    assert second.reason == Decision.DENIED_INSUFFICIENT_CREDITS
    assert second.remaining == 9
    assert second.required == 10
    assert second.plan_id == "basic"
    assert len(list_usage_events("alice")) == 1


def test_catalog_cost_is_used_by_default():
    _subscribe("sam", "standard")
    result = check_and_consume("sam", "linkedin_optimization")
    assert result.success
    assert result.required == 4
    assert result.remaining == 46


def test_free_user_gets_three_credits_per_month():
    results = [check_and_consume("newbie", "resume_generation") for _ in range(4)]
    assert [r.success for r in results] == [True, True, True, False]
    assert results[2].remaining == 0
    assert results[3].reason == Decision.DENIED_INSUFFICIENT_CREDITS
    assert results[3].plan_id == "free"


def test_free_user_denied_paid_feature_without_side_effect():
    result = check_and_consume("newbie", "job_tailoring")
    assert result.success is False
    assert result.reason == Decision.DENIED_NO_FEATURE
    assert result.remaining == 3
    assert list_usage_events("newbie") == []


def test_unmetered_feature_writes_no_event():
    result = check_and_consume("newbie", "ai_suggestions")
    assert result.success is True
    assert result.required == 0
    assert result.usage_event_id is None
    assert list_usage_events("newbie") == []


def test_unmetered_feature_still_checks_entitlement():
    _subscribe("paid", "pro")
    set_subscription_status("paid", SubscriptionStatus.CANCELED)
    # ai_suggestions is a free-tier feature, so the free fallback allows it
    assert check_and_consume("paid", "ai_suggestions").success is True


@pytest.mark.parametrize("credits_required", [0, -2, True, 2.0, "1"])
def test_invalid_credits_required_rejected(credits_required):
    with pytest.raises(ValidationError):
        check_and_consume("u1", "resume_generation", credits_required)


def test_unknown_feature_rejected():
    with pytest.raises(ValidationError):
        check_and_consume("u1", "time_travel")


def test_deleted_pro_subscription_scenario():
    _subscribe("pat", "pro")
    assert check_and_consume("pat", "personal_brand_strategy").success
    for _ in range(3):
        assert check_and_consume("pat", "resume_generation").success

    set_subscription_status("pat", SubscriptionStatus.CANCELED)

    denied = check_and_consume("pat", "personal_brand_strategy")
    assert denied.success is False
    assert denied.reason == Decision.DENIED_SUBSCRIPTION_INACTIVE

    allowed = check_and_consume("pat", "resume_generation")
    assert allowed.success is True
    assert allowed.plan_id == "free"
    assert allowed.remaining == 2


def test_paid_period_usage_does_not_drain_free_fallback():
    # Paid period starts mid-month, inside the free tier's calendar month
    now = datetime(2026, 10, 20, 9, 30, tzinfo=timezone.utc)
    upsert_subscription(
        "pat", "pro", SubscriptionStatus.ACTIVE,
        customer_ref="cus_pat",
        subscription_ref="sub_pat",
        period_start=datetime(2026, 10, 15, tzinfo=timezone.utc),
        period_end=datetime(2026, 11, 15, tzinfo=timezone.utc),
        as_of=now - timedelta(days=5),
    )
    for _ in range(3):
        assert check_and_consume("pat", "resume_generation", now=now).success

    set_subscription_status("pat", SubscriptionStatus.CANCELED, as_of=now)

    later = now + timedelta(hours=1)
    result = check_and_consume("pat", "resume_generation", now=later)
    assert result.success is True
    assert result.plan_id == "free"
    assert result.remaining == 2
    summary = get_credit_summary("pat", now=later)
    assert summary.used_credits == 1
    assert summary.period_start == datetime(2026, 10, 1, tzinfo=timezone.utc)


def test_remaining_never_negative_after_downgrade():
    _subscribe("dora", "standard")
    for _ in range(5):
        assert check_and_consume("dora", "linkedin_optimization").success
    # 20 credits used; downgrade to basic (10/month) within the same period
    sub = store.get_subscription("dora")
    upsert_subscription(
        "dora", "basic", SubscriptionStatus.ACTIVE,
        customer_ref=sub.external_customer_ref,
        subscription_ref=sub.external_subscription_ref,
        period_start=sub.current_period_start,
        period_end=sub.current_period_end,
    )
    result = check_and_consume("dora", "resume_generation")
    assert result.success is False
    assert result.remaining == 0
    assert get_credit_summary("dora").remaining_credits == 0


def test_new_period_resets_usage():
    _subscribe("rene", "basic")
    for _ in range(10):
        assert check_and_consume("rene", "resume_generation").success
    assert not check_and_consume("rene", "resume_generation").success

    now = _now()
    sub = store.get_subscription("rene")
    upsert_subscription(
        "rene", "basic", SubscriptionStatus.ACTIVE,
        customer_ref=sub.external_customer_ref,
        subscription_ref=sub.external_subscription_ref,
        period_start=now - timedelta(seconds=5),
        period_end=now + timedelta(days=30),
    )
    result = check_and_consume("rene", "resume_generation")
    assert result.success
    assert result.remaining == 9


def test_conflict_is_retried(monkeypatch):
    real_append = store.append_usage_event
    calls = {"n": 0}

    def flaky_append(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= 2:
            raise LedgerVersionConflict("u1")
        return real_append(*args, **kwargs)

    monkeypatch.setattr(credits_service, "append_usage_event", flaky_append)
    result = check_and_consume("u1", "resume_generation")
    assert result.success
    assert calls["n"] == 3
    assert sum_usage("u1", *store.calendar_month_period()) == 1


def test_retries_exhausted_raise_concurrency_conflict(monkeypatch, test_settings):
    monkeypatch.setattr(test_settings, "CREDIT_MAX_RETRIES", 2)
    calls = {"n": 0}

    def always_conflict(*args, **kwargs):
        calls["n"] += 1
        raise LedgerVersionConflict("u1")

    monkeypatch.setattr(credits_service, "append_usage_event", always_conflict)
    with pytest.raises(ConcurrencyConflictError):
        check_and_consume("u1", "resume_generation")
    assert calls["n"] == 3
    assert list_usage_events("u1") == []


def test_storage_failure_never_grants_access(monkeypatch):
    from sqlalchemy.exc import OperationalError

    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    monkeypatch.setattr(credits_service, "sum_usage", broken)
    with pytest.raises(StorageUnavailableError):
        check_and_consume("u1", "resume_generation")


def test_refund_returns_balance_to_pre_debit_value():
    _subscribe("ray", "standard")
    before = get_credit_summary("ray").remaining_credits
    result = check_and_consume("ray", "linkedin_optimization")
    assert result.remaining == before - 4

    remaining = refund(result.usage_event_id, reason="generation failed")
    assert remaining == before
    # Idempotent
    assert refund(result.usage_event_id) == before
    assert get_credit_summary("ray").used_credits == 0


def test_credit_summary_for_new_user():
    summary = get_credit_summary("fresh")
    assert summary.plan == "free"
    assert summary.status == "free"
    assert summary.total_credits == 3
    assert summary.used_credits == 0
    assert summary.remaining_credits == 3
    assert summary.unlimited is False
    assert summary.period_start.day == 1


def test_credit_summary_for_canceled_subscription_shows_free_tier():
    _subscribe("cy", "pro")
    set_subscription_status("cy", SubscriptionStatus.CANCELED)
    summary = get_credit_summary("cy")
    assert summary.plan == "free"
    assert summary.status == "canceled"
    assert summary.total_credits == 3


def test_usage_breakdown_groups_by_feature_and_day():
    _subscribe("bo", "pro")
    check_and_consume("bo", "resume_generation")
    check_and_consume("bo", "resume_generation")
    linkedin = check_and_consume("bo", "linkedin_optimization")
    check_and_consume("bo", "mock_interview")
    refund(linkedin.usage_event_id)

    breakdown = get_usage_breakdown("bo", days=7)
    assert breakdown.total_used == 3
    assert breakdown.by_feature == {"resume_generation": 2, "linkedin_optimization": 0, "mock_interview": 1}
    assert list(breakdown.by_day.values()) == [3]


@pytest.mark.parametrize("days", [0, 366, True])
def test_usage_breakdown_validates_days(days):
    with pytest.raises(ValidationError):
        get_usage_breakdown("bo", days=days)
