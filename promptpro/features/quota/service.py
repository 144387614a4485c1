"""
promptpro/features/quota/service.py

QuotaGuard: plan-based prompt creation limits.

Handles:
- Pure decision over (plan, current count, limit)
- Fresh-read guard for a personal or team scope (never caches counts)
- Headroom metadata for UI display
- Audit of denied attempts

The decision alone is advisory. The create path pairs it with the store's
conditional increment so concurrent creates cannot overshoot the limit.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from promptpro.core.errors import NotFoundError
from promptpro.core.store import DocumentStore, get_store
from promptpro.features.audit.service import record_audit_event
from promptpro.features.plans.service import UNLIMITED, is_unlimited, prompt_limit_for
from promptpro.models.scope import QuotaScope, QuotaScopeKind
from promptpro.models.team import Plan


logger = logging.getLogger(__name__)

PLAN_LIMIT = "plan_limit"
APPROACHING_LIMIT_RATIO = 0.8


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    plan: Plan
    current: int
    limit: int
    remaining: Optional[int]
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "plan": self.plan.value,
            "current": self.current,
            "limit": "unlimited" if is_unlimited(self.limit) else self.limit,
            "remaining": "unlimited" if self.remaining is None else self.remaining,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class QuotaSnapshot:
    """Fresh plan/count/limit for one scope."""
    scope: QuotaScope
    plan: Plan
    current: int
    limit: int


def evaluate_quota(plan: Plan, current: int, limit: int) -> QuotaDecision:
    """Allowed iff plan is Pro or current < limit (strict)."""
    plan = Plan(plan)
    if plan == Plan.PRO or is_unlimited(limit):
        return QuotaDecision(allowed=True, plan=plan, current=current, limit=UNLIMITED if is_unlimited(limit) else limit,
                             remaining=None)
    if current < limit:
        return QuotaDecision(allowed=True, plan=plan, current=current, limit=limit, remaining=limit - current)
    return QuotaDecision(allowed=False, plan=plan, current=current, limit=limit, remaining=0, reason=PLAN_LIMIT)


def effective_limit(snapshot: QuotaSnapshot) -> Optional[int]:
    """Limit to pass to the store's conditional increment (None = unbounded)."""
    if snapshot.plan == Plan.PRO or is_unlimited(snapshot.limit):
        return None
    return snapshot.limit


class QuotaGuard:
    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store or get_store()

    def snapshot(self, scope: QuotaScope) -> QuotaSnapshot:
        """Read plan, count and limit for the scope straight from the store."""
        if scope.kind == QuotaScopeKind.PERSONAL:
            user = self.store.get_user(scope.subject_id)
            if user is None:
                raise NotFoundError(f"User {scope.subject_id} not found")
            return QuotaSnapshot(
                scope=scope,
                plan=user.plan,
                current=user.prompt_count,
                limit=prompt_limit_for(user.plan, QuotaScopeKind.PERSONAL),
            )

        team = self.store.get_team(scope.subject_id)
        if team is None:
            raise NotFoundError(f"Team {scope.subject_id} not found")
        return QuotaSnapshot(scope=scope, plan=team.plan, current=team.prompt_count, limit=team.prompt_limit)

    def can_create(self, scope: QuotaScope, actor_id: Optional[str] = None) -> QuotaDecision:
        snap = self.snapshot(scope)
        decision = evaluate_quota(snap.plan, snap.current, snap.limit)
        if not decision.allowed:
            self.report_denied(scope, decision, actor_id)
        return decision

    def report_denied(self, scope: QuotaScope, decision: QuotaDecision, actor_id: Optional[str] = None) -> None:
        logger.warning(
            "[quota] BLOCK",
            extra={
                "scope": scope.kind.value,
                "subject_id": scope.subject_id,
                "limit": decision.limit,
                "current": decision.current,
            },
        )
        record_audit_event(
            actor_id=actor_id or (scope.subject_id if scope.kind == QuotaScopeKind.PERSONAL else None),
            action="quota_denied",
            target_type=scope.target_type,
            target_id=scope.subject_id,
            details={
                "reason": decision.reason,
                "plan": decision.plan.value,
                "limit": decision.limit,
                "current": decision.current,
            },
        )

    def headroom(self, scope: QuotaScope) -> Dict[str, Any]:
        snap = self.snapshot(scope)
        if snap.plan == Plan.PRO or is_unlimited(snap.limit):
            return {
                "status": "unlimited",
                "plan": snap.plan.value,
                "scope": scope.kind.value,
                "current": snap.current,
                "limit": "unlimited",
                "remaining": "unlimited",
            }

        remaining = max(0, snap.limit - snap.current)
        if snap.current >= snap.limit:
            status = "at_limit"
        elif snap.current >= snap.limit * APPROACHING_LIMIT_RATIO:
            status = "approaching_limit"
        else:
            status = "ok"

        return {
            "status": status,
            "plan": snap.plan.value,
            "scope": scope.kind.value,
            "current": snap.current,
            "limit": snap.limit,
            "remaining": remaining,
        }
