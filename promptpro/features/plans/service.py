"""
promptpro/features/plans/service.py

Plan limits and billing-driven plan synchronization.

Handles:
- Plan -> prompt limit resolution (personal and team limits are independent)
- PlanSyncAdapter: applies plan-change events from the billing provider

Billing callbacks are at-least-once and unordered, so every event is:
1. claimed in the processed-event ledger first; a failed claim is a duplicate
2. recorded but not applied if it is older than the target's last sync
3. applied as an idempotent "set plan" (never a toggle)
The claim is settled with the outcome, or released if applying raised so a
redelivery can retry.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from promptpro.core.config import settings
from promptpro.core.errors import VersionConflictError
from promptpro.core.logging import log_event
from promptpro.core.store import DocumentStore, get_store
from promptpro.features.audit.service import record_audit_event
from promptpro.models.billing import PlanChangeEvent
from promptpro.models.scope import QuotaScopeKind
from promptpro.models.team import BillingRef, Plan, Team
from promptpro.models.user import User


logger = logging.getLogger(__name__)

UNLIMITED = -1

# Ledger outcome while a delivery is being applied
CLAIMED = "claimed"


def prompt_limit_for(plan: Plan, kind: QuotaScopeKind = QuotaScopeKind.TEAM) -> int:
    """Return the prompt cap for a plan (-1 = unlimited)."""
    plan = Plan(plan)
    if plan == Plan.PRO:
        return UNLIMITED
    if QuotaScopeKind(kind) == QuotaScopeKind.PERSONAL:
        return settings.FREE_PERSONAL_PROMPT_LIMIT
    return settings.FREE_TEAM_PROMPT_LIMIT


def is_unlimited(limit: Optional[int]) -> bool:
    return limit is None or limit < 0


class PlanSyncStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TARGET_NOT_FOUND = "target_not_found"


@dataclass(frozen=True)
class PlanSyncResult:
    status: PlanSyncStatus
    event_id: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    plan: Optional[Plan] = None
    previous_plan: Optional[Plan] = None


def _merge_billing_ref(current: BillingRef, event: PlanChangeEvent) -> BillingRef:
    return BillingRef(
        customer_ref=event.customer_ref or current.customer_ref,
        subscription_ref=event.subscription_ref or current.subscription_ref,
    )


def _is_stale(synced_at, event: PlanChangeEvent) -> bool:
    return synced_at is not None and event.occurred_at < synced_at


class PlanSyncAdapter:
    """Consumes plan-change events and updates team/user plan state."""

    def __init__(self, store: Optional[DocumentStore] = None, max_retries: Optional[int] = None):
        self._store = store
        self._max_retries = max_retries

    @property
    def store(self) -> DocumentStore:
        return self._store or get_store()

    @property
    def max_retries(self) -> int:
        if self._max_retries is None:
            return settings.MEMBERSHIP_MAX_RETRIES
        return self._max_retries

    def apply(self, event: PlanChangeEvent) -> PlanSyncResult:
        store = self.store
        if not store.record_processed_event(event.event_id, event.event_type, CLAIMED):
            log_event("info", "[plans] duplicate billing event skipped", event_type=event.event_type,
                      extra={"event_id": event.event_id})
            return PlanSyncResult(status=PlanSyncStatus.DUPLICATE, event_id=event.event_id)

        try:
            result = self._sync(event)
        except Exception:
            store.release_processed_event(event.event_id)
            raise
        store.settle_processed_event(event.event_id, result.status.value)

        if result.status == PlanSyncStatus.APPLIED:
            self._audit(event, result)
        return result

    def _sync(self, event: PlanChangeEvent) -> PlanSyncResult:
        target = self._resolve_target(event)
        if target is None:
            logger.warning(
                "[plans] no team or user for billing event",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return PlanSyncResult(status=PlanSyncStatus.TARGET_NOT_FOUND, event_id=event.event_id)
        if isinstance(target, Team):
            return self._apply_to_team(target, event)
        return self._apply_to_user(target, event)

    def _resolve_target(self, event: PlanChangeEvent) -> Union[Team, User, None]:
        store = self.store
        if event.team_id:
            return store.get_team(event.team_id)
        if event.user_id:
            return store.get_user(event.user_id)
        team = store.find_team_by_subscription(event.subscription_ref)
        if team is not None:
            return team
        return store.find_user_by_subscription(event.subscription_ref)

    def _apply_to_team(self, team: Team, event: PlanChangeEvent) -> PlanSyncResult:
        previous_plan = team.plan
        for _ in range(self.max_retries + 1):
            if _is_stale(team.plan_synced_at, event):
                return self._stale(event, "team", team.id)
            previous_plan = team.plan
            updated = team.model_copy(update={
                "plan": event.new_plan,
                "prompt_limit": prompt_limit_for(event.new_plan, QuotaScopeKind.TEAM),
                "billing_ref": _merge_billing_ref(team.billing_ref, event),
                "plan_synced_at": event.occurred_at,
            })
            try:
                self.store.replace_team(updated, team.version)
                break
            except VersionConflictError:
                team = self.store.get_team(team.id)
                if team is None:
                    return PlanSyncResult(status=PlanSyncStatus.TARGET_NOT_FOUND, event_id=event.event_id)
        else:
            raise VersionConflictError(f"Team {team.id} plan update kept conflicting")

        log_event("info", "[plans] team plan applied", team_id=team.id, event_type=event.event_type,
                  extra={"plan": event.new_plan.value, "previous_plan": previous_plan.value})
        return PlanSyncResult(
            status=PlanSyncStatus.APPLIED,
            event_id=event.event_id,
            target_type="team",
            target_id=team.id,
            plan=event.new_plan,
            previous_plan=previous_plan,
        )

    def _apply_to_user(self, user: User, event: PlanChangeEvent) -> PlanSyncResult:
        if _is_stale(user.plan_synced_at, event):
            return self._stale(event, "user", user.id)
        try:
            updated = self.store.update_user_plan(
                user.id, event.new_plan, _merge_billing_ref(user.billing_ref, event), event.occurred_at
            )
        except VersionConflictError:
            # A newer event was written after the snapshot was read
            return self._stale(event, "user", user.id)
        if updated is None:
            return PlanSyncResult(status=PlanSyncStatus.TARGET_NOT_FOUND, event_id=event.event_id)
        log_event("info", "[plans] user plan applied", actor_id=user.id, event_type=event.event_type,
                  extra={"plan": event.new_plan.value, "previous_plan": user.plan.value})
        return PlanSyncResult(
            status=PlanSyncStatus.APPLIED,
            event_id=event.event_id,
            target_type="user",
            target_id=user.id,
            plan=event.new_plan,
            previous_plan=user.plan,
        )

    @staticmethod
    def _stale(event: PlanChangeEvent, target_type: str, target_id: str) -> PlanSyncResult:
        logger.info(
            "[plans] stale billing event ignored",
            extra={"event_id": event.event_id, "target_type": target_type, "target_id": target_id},
        )
        return PlanSyncResult(
            status=PlanSyncStatus.STALE,
            event_id=event.event_id,
            target_type=target_type,
            target_id=target_id,
        )

    @staticmethod
    def _audit(event: PlanChangeEvent, result: PlanSyncResult) -> None:
        action = "upgrade_plan" if event.new_plan == Plan.PRO else "downgrade_plan"
        # Team events may name the user who started checkout
        actor_id = event.user_id if result.target_type == "team" else None
        record_audit_event(
            actor_id=actor_id,
            action=action,
            target_type=result.target_type,
            target_id=result.target_id,
            details={
                "new_plan": event.new_plan.value,
                "previous_plan": result.previous_plan.value if result.previous_plan else None,
                "reason": event.reason,
                "event_id": event.event_id,
                "customer_ref": event.customer_ref,
                "subscription_ref": event.subscription_ref,
            },
        )
