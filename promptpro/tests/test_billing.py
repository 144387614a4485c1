"""
Billing: Stripe event translation, webhook processing, team checkout.

No network: Stripe SDK calls are patched.
"""
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from promptpro.core.config import settings
from promptpro.core.errors import PermissionError, ValidationError
from promptpro.features.billing.provider import BillingWebhookError, BillingWebhookResult
from promptpro.features.billing.service import (
    billing_enabled,
    get_provider,
    process_webhook_event,
    start_team_checkout,
)
from promptpro.features.billing.stripe_provider import StripeProvider
from promptpro.features.membership.service import MembershipService
from promptpro.features.plans.service import PlanSyncAdapter
from promptpro.models.billing import PlanChangeEvent
from promptpro.models.team import Plan


CREATED = 1767225600  # 2026-01-01T00:00:00Z


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret="whsec_test", price_id="price_pro")


def _stripe_event(event_type, obj, event_id="evt_1", created=CREATED):
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


class FakeProvider:
    """Hands back a pre-built webhook result and records checkout calls."""

    def __init__(self, result=None):
        self.result = result
        self.customers = []
        self.sessions = []

    def ensure_customer(self, user_id, email=None, name=None):
        self.customers.append(user_id)
        return f"cus_{user_id}"

    def create_checkout_session(self, customer_id, success_url, cancel_url, metadata=None):
        self.sessions.append({"customer_id": customer_id, "metadata": metadata})
        return {"session_id": "cs_test", "url": "https://checkout.example/cs_test"}

    def handle_webhook(self, headers, body):
        return self.result


def test_billing_disabled_when_no_stripe_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    assert billing_enabled() is False
    assert get_provider() is None
    assert start_team_checkout("t1", "u1", "http://ok", "http://cancel") is None


def test_checkout_completed_translates_to_pro(provider):
    result = provider.translate_event(_stripe_event("checkout.session.completed", {
        "subscription": "sub_1",
        "customer": "cus_1",
        "metadata": {"teamId": "team_1", "userId": "u1"},
    }))

    event = result.plan_event
    assert event.new_plan == Plan.PRO
    assert event.team_id == "team_1"
    assert event.user_id == "u1"
    assert event.subscription_ref == "sub_1"
    assert event.occurred_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_checkout_without_team_is_ignored(provider):
    result = provider.translate_event(_stripe_event("checkout.session.completed", {
        "subscription": "sub_1", "customer": "cus_1", "metadata": {},
    }))
    assert result.plan_event is None
    assert "teamId" in result.ignored_reason


@pytest.mark.parametrize("event_type,status", [
    ("customer.subscription.deleted", "canceled"),
    ("customer.subscription.updated", "past_due"),
])
def test_subscription_end_translates_to_free(provider, event_type, status):
    result = provider.translate_event(_stripe_event(event_type, {
        "id": "sub_1", "customer": "cus_1", "status": status,
    }))
    assert result.plan_event.new_plan == Plan.FREE
    assert result.plan_event.subscription_ref == "sub_1"
    assert result.plan_event.team_id is None


def test_active_subscription_update_is_ignored(provider):
    result = provider.translate_event(_stripe_event("customer.subscription.updated", {
        "id": "sub_1", "status": "active",
    }))
    assert result.plan_event is None


def test_unhandled_event_type(provider):
    result = provider.translate_event(_stripe_event("invoice.paid", {"id": "in_1"}))
    assert result.plan_event is None
    assert result.ignored_reason == "unhandled event type"


def test_webhook_requires_signature_header(provider):
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({}, b"{}")


def test_webhook_rejects_bad_signature(provider):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=bad")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(BillingWebhookError):
            provider.handle_webhook({"stripe-signature": "t=1,v1=bad"}, b"{}")


def test_webhook_verified_event_is_translated(provider):
    event = _stripe_event("customer.subscription.deleted", {"id": "sub_9", "status": "canceled"}, event_id="evt_9")
    with patch("stripe.Webhook.construct_event", return_value=event) as construct:
        result = provider.handle_webhook({"stripe-signature": "sig"}, json.dumps(event).encode())

    construct.assert_called_once()
    assert result.event_id == "evt_9"
    assert result.plan_event.new_plan == Plan.FREE


def test_process_webhook_applies_once(store):
    team = MembershipService(store).create_team("u1", "Team").team
    plan_event = PlanChangeEvent(
        event_id="evt_1",
        event_type="checkout.session.completed",
        team_id=team.id,
        subscription_ref="sub_1",
        customer_ref="cus_1",
        new_plan=Plan.PRO,
        occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    fake = FakeProvider(BillingWebhookResult(event_id="evt_1", event_type=plan_event.event_type,
                                             plan_event=plan_event))
    adapter = PlanSyncAdapter(store)

    first = process_webhook_event({}, b"", provider=fake, adapter=adapter)
    second = process_webhook_event({}, b"", provider=fake, adapter=adapter)

    assert first["status"] == "applied"
    assert first["target_id"] == team.id
    assert second["status"] == "duplicate"
    assert store.get_team(team.id).plan == Plan.PRO


def test_process_webhook_records_ignored_events(store):
    fake = FakeProvider(BillingWebhookResult(event_id="evt_2", event_type="invoice.paid",
                                             ignored_reason="unhandled event type"))
    response = process_webhook_event({}, b"", provider=fake, adapter=PlanSyncAdapter(store))

    assert response["status"] == "ignored"
    assert store.has_processed_event("evt_2")


def test_team_checkout_creates_customer_once(store, make_user):
    make_user("u1")
    team = MembershipService(store).create_team("u1", "Team").team
    fake = FakeProvider()

    session = start_team_checkout(team.id, "u1", "http://ok", "http://cancel", store=store, provider=fake)
    start_team_checkout(team.id, "u1", "http://ok", "http://cancel", store=store, provider=fake)

    assert session["session_id"] == "cs_test"
    assert fake.customers == ["u1"]
    assert fake.sessions[0]["metadata"] == {"teamId": team.id, "userId": "u1"}
    assert store.get_user("u1").billing_ref.customer_ref == "cus_u1"


def test_team_checkout_permissions(store, make_user):
    make_user("u1")
    make_user("u2")
    service = MembershipService(store)
    team = service.create_team("u1", "Team").team
    service.add_member(team.id, "u1", "u2@example.com")

    with pytest.raises(PermissionError):
        start_team_checkout(team.id, "u2", "http://ok", "http://cancel", store=store, provider=FakeProvider())


def test_team_checkout_rejects_existing_pro(store, make_user):
    make_user("u1")
    team = MembershipService(store).create_team("u1", "Team").team
    PlanSyncAdapter(store).apply(PlanChangeEvent(
        event_id="evt_up", team_id=team.id, subscription_ref="sub_1", new_plan=Plan.PRO,
        occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    ))

    with pytest.raises(ValidationError):
        start_team_checkout(team.id, "u1", "http://ok", "http://cancel", store=store, provider=FakeProvider())


def test_stripe_customer_creation_uses_sdk(provider):
    with patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_new")) as create:
        assert provider.ensure_customer("u1", "u1@example.com") == "cus_new"
    assert create.call_args.kwargs["metadata"] == {"userId": "u1"}
