"""
Stripe implementation of BillingProvider.

Only three Stripe event types move a plan:
- checkout.session.completed with metadata.teamId -> Pro for that team
- customer.subscription.deleted -> Free for the subscription's holder
- customer.subscription.updated leaving active/trialing -> Free
Everything else is returned as ignored with a reason.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import stripe

from promptpro.core.config import settings
from promptpro.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from promptpro.models.billing import PlanChangeEvent
from promptpro.models.team import Plan


logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}


def _setting(explicit: Optional[str], name: str) -> Optional[str]:
    return explicit or os.getenv(name) or getattr(settings, name, None)


def _occurred_at(event: Dict[str, Any]) -> datetime:
    created = event.get("created")
    if created:
        return datetime.fromtimestamp(created, tz=timezone.utc)
    return datetime.now(timezone.utc)


class StripeProvider:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        price_id: Optional[str] = None,
    ):
        self.secret_key = _setting(secret_key, "STRIPE_SECRET_KEY")
        self.webhook_secret = _setting(webhook_secret, "STRIPE_WEBHOOK_SECRET")
        self.price_id = _setting(price_id, "STRIPE_PRICE_PRO")
        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = self.secret_key

        self._handlers: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], BillingWebhookResult]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
        }

    # -- outbound calls

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        try:
            return stripe.Customer.create(**params).id
        except stripe.StripeError as exc:
            raise BillingProviderError(f"Stripe customer creation failed: {exc}") from exc

    def create_checkout_session(
        self,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        if not self.price_id:
            raise BillingProviderError("STRIPE_PRICE_PRO not configured")
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": self.price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
        except stripe.StripeError as exc:
            raise BillingProviderError(f"Stripe checkout session creation failed: {exc}") from exc
        return {"session_id": session.id, "url": session.url}

    # -- inbound webhooks

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not signature:
            raise BillingWebhookError("Missing stripe-signature header")
        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as exc:
            raise BillingWebhookError(f"Invalid payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise BillingWebhookError(f"Invalid signature: {exc}") from exc
        return self.translate_event(event)

    def translate_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Map a verified event onto a PlanChangeEvent, or an ignored result."""
        handler = self._handlers.get(event["type"])
        if handler is None:
            logger.info("billing.stripe_unhandled", extra={"event_type": event["type"]})
            return self._ignored(event, {}, "unhandled event type")
        obj = (event.get("data") or {}).get("object") or {}
        return handler(event, obj)

    @staticmethod
    def _ignored(event: Dict[str, Any], obj: Dict[str, Any], reason: str) -> BillingWebhookResult:
        return BillingWebhookResult(event_id=event["id"], event_type=event["type"], ignored_reason=reason,
                                    metadata=dict(obj.get("metadata") or {}))

    @staticmethod
    def _changed(event: Dict[str, Any], obj: Dict[str, Any], plan_event: PlanChangeEvent) -> BillingWebhookResult:
        return BillingWebhookResult(event_id=event["id"], event_type=event["type"], plan_event=plan_event,
                                    metadata=dict(obj.get("metadata") or {}))

    def _checkout_completed(self, event, obj) -> BillingWebhookResult:
        metadata = obj.get("metadata") or {}
        team_id = metadata.get("teamId")
        subscription_ref = obj.get("subscription")
        customer_ref = obj.get("customer")
        if not (team_id and subscription_ref and customer_ref):
            return self._ignored(event, obj, "missing teamId, subscription or customer")
        return self._changed(event, obj, PlanChangeEvent(
            event_id=event["id"],
            event_type=event["type"],
            team_id=team_id,
            user_id=metadata.get("userId"),
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            new_plan=Plan.PRO,
            occurred_at=_occurred_at(event),
            reason="checkout completed",
        ))

    def _subscription_changed(self, event, obj) -> BillingWebhookResult:
        status = obj.get("status")
        if event["type"] == "customer.subscription.updated" and status in ACTIVE_SUBSCRIPTION_STATUSES:
            return self._ignored(event, obj, f"subscription still {status}")
        if not obj.get("id"):
            return self._ignored(event, obj, "missing subscription id")
        return self._changed(event, obj, PlanChangeEvent(
            event_id=event["id"],
            event_type=event["type"],
            subscription_ref=obj["id"],
            customer_ref=obj.get("customer"),
            new_plan=Plan.FREE,
            occurred_at=_occurred_at(event),
            reason=f"subscription {status}",
        ))
