"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) so plan
synchronization never depends on a provider's payload shapes.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field

from promptpro.models.billing import PlanChangeEvent


@dataclass
class BillingWebhookResult:
    """A verified webhook, translated into a plan change when it carries one."""
    event_id: str
    event_type: str
    plan_event: Optional[PlanChangeEvent] = None
    ignored_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Webhook signature verification and translation
    """

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Create a billing customer for the user.

        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        """
        Create a Pro subscription checkout session.

        Returns:
            {"session_id": ..., "url": ...}

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and translate the event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
