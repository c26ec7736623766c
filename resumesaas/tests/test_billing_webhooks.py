"""
Webhook synchronizer tests.

Bodies are signed with the test webhook secret exactly as Stripe signs them,
so the real StripeProvider verification path runs.
"""
import time

import pytest
from sqlalchemy import select

from resumesaas.conftest import WEBHOOK_SECRET
from resumesaas.core.database import get_db_session, payment_events
from resumesaas.core.errors import BillingDisabledError, InvalidWebhookSignatureError
from resumesaas.features.billing import service as billing_service
from resumesaas.features.billing.service import process_webhook_event
from resumesaas.features.credits.service import check_and_consume
from resumesaas.features.ledger.store import get_subscription, upsert_subscription
from resumesaas.models.credits import Decision
from resumesaas.models.subscription import SubscriptionStatus
from resumesaas.tests.mocks import sign_payload, stripe_event, subscription_object

pytestmark = pytest.mark.usefixtures("billing_settings")


def _deliver(event, secret=WEBHOOK_SECRET):
    body, headers = sign_payload(event, secret)
    return process_webhook_event(headers, body)


def _checkout(user_id="user_1", plan_id="pro", sub_id="sub_123", customer="cus_123", created=None):
    return stripe_event(
        f"evt_checkout_{sub_id}",
        "checkout.session.completed",
        {
            "id": f"cs_{sub_id}",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": customer,
            "subscription": sub_id,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id, "plan_id": plan_id},
        },
        created=created,
    )


def _payment_event_row(event_id):
    with get_db_session() as session:
        return session.execute(select(payment_events).where(payment_events.c.event_id == event_id)).first()


def test_checkout_completed_activates_plan():
    outcome = _deliver(_checkout())

    assert outcome.status == "processed"
    assert outcome.user_id == "user_1"
    sub = get_subscription("user_1")
    assert sub.plan_id == "pro"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.external_customer_ref == "cus_123"
    assert sub.external_subscription_ref == "sub_123"

    row = _payment_event_row("evt_checkout_sub_123")
    assert row.processed is True
    assert row.user_id == "user_1"
    assert row.error is None


def test_replayed_event_is_a_no_op():
    event = _checkout()
    first = _deliver(event)
    version = get_subscription("user_1").ledger_version

    second = _deliver(event)

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert get_subscription("user_1").ledger_version == version


def test_invalid_signature_rejected_without_side_effects():
    with pytest.raises(InvalidWebhookSignatureError):
        _deliver(_checkout(), secret="whsec_wrong")
    assert get_subscription("user_1").is_implicit
    assert _payment_event_row("evt_checkout_sub_123") is None


def test_missing_signature_header_rejected():
    body, _ = sign_payload(_checkout(), WEBHOOK_SECRET)
    with pytest.raises(InvalidWebhookSignatureError):
        process_webhook_event({}, body)


def test_expired_signature_rejected():
    body, headers = sign_payload(_checkout(), WEBHOOK_SECRET, timestamp=int(time.time()) - 3600)
    with pytest.raises(InvalidWebhookSignatureError):
        process_webhook_event(headers, body)


def test_webhook_requires_billing(monkeypatch, test_settings):
    monkeypatch.setattr(test_settings, "STRIPE_SECRET_KEY", None)
    with pytest.raises(BillingDisabledError):
        _deliver(_checkout())


def test_subscription_updated_sets_period_from_stripe():
    _deliver(_checkout())
    start = int(time.time()) - 3600
    end = start + 30 * 86400
    _deliver(stripe_event(
        "evt_sub_updated",
        "customer.subscription.updated",
        subscription_object(period_start=start, period_end=end, metadata={"user_id": "user_1"}),
    ))

    sub = get_subscription("user_1")
    assert int(sub.current_period_start.timestamp()) == start
    assert int(sub.current_period_end.timestamp()) == end


def test_subscription_resolved_by_customer_ref_without_metadata():
    _deliver(_checkout())
    _deliver(stripe_event(
        "evt_downgrade",
        "customer.subscription.updated",
        subscription_object(price_id="price_basic"),
    ))
    assert get_subscription("user_1").plan_id == "basic"


def test_subscription_deleted_falls_back_to_free_features():
    _deliver(_checkout())
    assert check_and_consume("user_1", "personal_brand_strategy").success
    for _ in range(3):
        assert check_and_consume("user_1", "resume_generation").success

    _deliver(stripe_event(
        "evt_sub_deleted",
        "customer.subscription.deleted",
        subscription_object(status="canceled"),
    ))

    assert get_subscription("user_1").status == SubscriptionStatus.CANCELED
    denied = check_and_consume("user_1", "personal_brand_strategy")
    assert denied.success is False
    assert denied.reason == Decision.DENIED_SUBSCRIPTION_INACTIVE
    allowed = check_and_consume("user_1", "resume_generation")
    assert allowed.success is True
    assert allowed.plan_id == "free"
    assert allowed.remaining == 2


def test_payment_failed_marks_past_due_and_recovery_reactivates():
    _deliver(_checkout())
    invoice = {
        "id": "in_1",
        "object": "invoice",
        "customer": "cus_123",
        "subscription": "sub_123",
        "lines": {"data": []},
    }
    _deliver(stripe_event("evt_inv_failed", "invoice.payment_failed", invoice))
    assert get_subscription("user_1").status == SubscriptionStatus.PAST_DUE
    assert check_and_consume("user_1", "job_tailoring").reason == Decision.DENIED_SUBSCRIPTION_INACTIVE

    _deliver(stripe_event("evt_inv_paid", "invoice.payment_succeeded", invoice))
    sub = get_subscription("user_1")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.plan_id == "pro"


def test_stale_event_does_not_override_newer_state():
    now = int(time.time())
    _deliver(_checkout(created=now))
    _deliver(stripe_event(
        "evt_old_update",
        "customer.subscription.updated",
        subscription_object(price_id="price_basic", status="past_due"),
        created=now - 600,
    ))
    sub = get_subscription("user_1")
    assert sub.plan_id == "pro"
    assert sub.status == SubscriptionStatus.ACTIVE


def test_late_subscription_created_sets_real_period_after_checkout():
    now = int(time.time())
    _deliver(_checkout(created=now + 3))
    placeholder = get_subscription("user_1").current_period_start

    start = now - 5
    end = start + 30 * 86400
    outcome = _deliver(stripe_event(
        "evt_sub_created",
        "customer.subscription.created",
        subscription_object(period_start=start, period_end=end, metadata={"user_id": "user_1"}),
        created=now,
    ))

    assert outcome.status == "processed"
    assert outcome.note is None
    sub = get_subscription("user_1")
    assert int(sub.current_period_start.timestamp()) == start
    assert int(sub.current_period_end.timestamp()) == end
    assert sub.current_period_start != placeholder
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.plan_id == "pro"


def test_event_for_replaced_subscription_is_ignored():
    _deliver(_checkout(sub_id="sub_old"))
    _deliver(_checkout(sub_id="sub_new"))

    outcome = _deliver(stripe_event(
        "evt_old_deleted",
        "customer.subscription.deleted",
        subscription_object(sub_id="sub_old", status="canceled"),
    ))

    assert outcome.note == "superseded subscription"
    sub = get_subscription("user_1")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.external_subscription_ref == "sub_new"


def test_unresolved_user_is_recorded_as_processed():
    outcome = _deliver(stripe_event(
        "evt_orphan",
        "customer.subscription.updated",
        subscription_object(sub_id="sub_unknown", customer="cus_unknown"),
    ))
    assert outcome.status == "processed"
    assert outcome.user_id is None
    assert outcome.note == "unresolved user"
    assert _payment_event_row("evt_orphan").processed is True


def test_unhandled_event_type_ignored():
    outcome = _deliver(stripe_event("evt_misc", "customer.created", {"id": "cus_9", "object": "customer"}))
    assert outcome.kind == "ignored"
    assert outcome.note == "ignored event type"


def test_one_time_checkout_ignored():
    event = _checkout()
    event["data"]["object"]["mode"] = "payment"
    outcome = _deliver(event)
    assert outcome.kind == "ignored"
    assert get_subscription("user_1").is_implicit


def test_processing_failure_is_recorded_and_reraised(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("ledger exploded")

    monkeypatch.setattr(billing_service, "apply_payment_event", broken)
    with pytest.raises(RuntimeError):
        _deliver(_checkout())

    row = _payment_event_row("evt_checkout_sub_123")
    assert row.processed is False
    assert "ledger exploded" in row.error
    assert get_subscription("user_1").is_implicit


def test_failed_event_is_retried_successfully(monkeypatch):
    event = _checkout()
    real_apply = billing_service.apply_payment_event
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("transient")
        return real_apply(*args, **kwargs)

    monkeypatch.setattr(billing_service, "apply_payment_event", flaky)
    with pytest.raises(RuntimeError):
        _deliver(event)

    outcome = _deliver(event)
    assert outcome.status == "processed"
    assert get_subscription("user_1").plan_id == "pro"
    row = _payment_event_row(event["id"])
    assert row.processed is True
    assert row.error is None


def test_unknown_plan_noted_and_not_applied():
    upsert_subscription("user_1", "basic", SubscriptionStatus.ACTIVE, customer_ref="cus_123", subscription_ref="sub_123")
    outcome = _deliver(_checkout(plan_id="enterprise"))
    assert outcome.note == "unknown plan enterprise"
    assert get_subscription("user_1").plan_id == "basic"


def test_webhook_endpoint(client):
    body, headers = sign_payload(_checkout(), WEBHOOK_SECRET)
    resp = client.post("/webhooks/payment", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_checkout_sub_123", "status": "processed"}

    bad = client.post("/webhooks/payment", content=body, headers={"stripe-signature": "t=1,v1=bad"})
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "invalid_webhook_signature"
