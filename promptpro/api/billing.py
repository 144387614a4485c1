"""
Billing API routes.

Minimal surface:
- POST /v1/billing/checkout: Create a Pro checkout session for a team
- POST /v1/billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, Depends, Request, HTTPException
from pydantic import BaseModel

from promptpro.core.auth import get_current_user_id
from promptpro.core.errors import AppError
from promptpro.features.billing.service import (
    billing_enabled,
    start_team_checkout,
    process_webhook_event,
)
from promptpro.features.billing.provider import BillingProviderError, BillingWebhookError


router = APIRouter(prefix="/v1/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to upgrade a team to Pro."""
    team_id: str
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    """Response with checkout session."""
    session_id: str
    url: str


def _billing_disabled() -> AppError:
    return AppError(
        "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.",
        code="billing_disabled",
        status_code=503,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(request: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe checkout session for a team's Pro upgrade.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        403: Caller is not owner/admin of the team
        400: Team already on Pro
        502: Stripe API error
    """
    if not billing_enabled():
        raise _billing_disabled()

    try:
        session = start_team_checkout(
            team_id=request.team_id,
            actor_id=user_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if not session:
        raise _billing_disabled()
    return session


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, then applies plan changes idempotently (duplicate and
    out-of-order deliveries are acknowledged without re-applying).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise _billing_disabled()

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        return process_webhook_event(headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
