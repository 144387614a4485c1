"""
Billing service orchestrator.

Coordinates:
- Team Pro checkout (customer creation + checkout session)
- Webhook processing, handed to PlanSyncAdapter

All Stripe-specific code is in stripe_provider.py; idempotency and ordering
of plan changes live in the plans feature.
"""
import os
import logging
from typing import Optional, Dict, Any

from promptpro.core.errors import NotFoundError, PermissionError, ValidationError
from promptpro.core.store import DocumentStore, get_store
from promptpro.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
)
from promptpro.features.billing.stripe_provider import StripeProvider
from promptpro.features.plans.service import PlanSyncAdapter
from promptpro.features.roles.service import can_manage_team
from promptpro.models.identity import normalize_id
from promptpro.models.team import BillingRef, Plan


logger = logging.getLogger(__name__)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    from promptpro.core.config import settings

    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError as exc:
        logger.warning("billing.provider_unavailable", extra={"error_code": "billing_disabled"}, exc_info=exc)
        return None


def start_team_checkout(
    team_id: str,
    actor_id: str,
    success_url: str,
    cancel_url: str,
    store: Optional[DocumentStore] = None,
    provider: Optional[BillingProvider] = None,
) -> Optional[Dict[str, str]]:
    """
    Start a Pro checkout for a team.

    Returns:
        {"session_id", "url"}, or None if billing disabled

    Raises:
        NotFoundError: team or user missing
        PermissionError: actor is not owner/admin of the team
        ValidationError: team already on Pro
        BillingProviderError: provider call failed
    """
    provider = provider or get_provider()
    if not provider:
        return None

    store = store or get_store()
    team_id = normalize_id(team_id)
    actor_id = normalize_id(actor_id)

    team = store.get_team(team_id)
    if team is None:
        raise NotFoundError(f"Team {team_id} not found")
    if not can_manage_team(team, actor_id):
        raise PermissionError("Only owners and admins can manage this team's subscription")
    if team.plan == Plan.PRO and team.billing_ref.subscription_ref:
        raise ValidationError("Team is already on the Pro plan")

    user = store.get_user(actor_id)
    if user is None:
        raise NotFoundError(f"User {actor_id} not found")

    customer_ref = user.billing_ref.customer_ref
    if not customer_ref:
        customer_ref = provider.ensure_customer(user.id, user.email, user.name)
        store.save_user(user.model_copy(update={
            "billing_ref": BillingRef(customer_ref=customer_ref,
                                      subscription_ref=user.billing_ref.subscription_ref),
        }))
        logger.info("Billing customer created", extra={"actor_id": user.id})

    session = provider.create_checkout_session(
        customer_id=customer_ref,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"teamId": team.id, "userId": user.id},
    )
    logger.info("Checkout session created", extra={"team_id": team.id, "actor_id": user.id})
    return session


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
    adapter: Optional[PlanSyncAdapter] = None,
) -> Dict[str, Any]:
    """
    Process billing webhook event (idempotent).

    1. Verify signature and translate
    2. Hand plan changes to PlanSyncAdapter (ledger claim + stale check + apply)
    3. Record events without a plan change so redeliveries are cheap

    Raises:
        BillingWebhookError: If billing disabled or signature invalid
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    adapter = adapter or PlanSyncAdapter()

    if result.plan_event is None:
        logger.info(
            "Billing webhook ignored",
            extra={"event_id": result.event_id, "event_type": result.event_type, "reason": result.ignored_reason},
        )
        adapter.store.record_processed_event(result.event_id, result.event_type, "ignored")
        return {
            "received": True,
            "event_id": result.event_id,
            "event_type": result.event_type,
            "status": "ignored",
            "reason": result.ignored_reason,
        }

    sync = adapter.apply(result.plan_event)
    return {
        "received": True,
        "event_id": result.event_id,
        "event_type": result.event_type,
        "status": sync.status.value,
        "target_type": sync.target_type,
        "target_id": sync.target_id,
    }
