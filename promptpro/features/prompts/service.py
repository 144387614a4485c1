"""
promptpro/features/prompts/service.py

Prompt create/delete with quota enforcement.

Personal prompts (no team) are charged to the owner's counter; team prompts
to the team's counter. The create path is: fresh quota decision, conditional
increment in the store (only succeeds while count < limit), then insert. A
failed insert gives the slot back.
"""

import logging
import uuid
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from promptpro.core.errors import NotFoundError, PermissionError, QuotaExceededError, ValidationError
from promptpro.core.store import DocumentStore, get_store
from promptpro.features.audit.service import record_audit_event
from promptpro.features.quota.service import QuotaDecision, QuotaGuard, effective_limit, evaluate_quota
from promptpro.features.roles.service import PromptAction, can_manage_prompt, role_of
from promptpro.features.taxonomy.service import new_tag
from promptpro.models.identity import normalize_id, normalize_optional_id, same_identity
from promptpro.models.prompt import Prompt, PromptCreateRequest, Visibility
from promptpro.models.scope import QuotaScope


logger = logging.getLogger(__name__)


def _quota_error(decision: QuotaDecision) -> QuotaExceededError:
    return QuotaExceededError(
        f"Prompt limit reached ({decision.current}/{decision.limit}) on the {decision.plan.value} plan"
    )


def _quota_scope(owner_id: str, team_id: Optional[str]) -> QuotaScope:
    return QuotaScope.team(team_id) if team_id else QuotaScope.personal(owner_id)


class PromptService:
    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store or get_store()

    def create_prompt(
        self,
        owner_id,
        title: str,
        content: str,
        tags: Optional[Iterable[str]] = None,
        visibility=Visibility.PRIVATE,
        team_id=None,
    ) -> Prompt:
        owner_id = normalize_id(owner_id)
        team_id = normalize_optional_id(team_id)
        try:
            request = PromptCreateRequest(
                title=title,
                content=content,
                tags=list(tags or []),
                visibility=visibility,
                team_id=team_id,
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid prompt: {exc.errors()[0].get('msg', 'invalid')}")

        # Same normalization and length rule as taxonomy writes
        clean_tags = frozenset(new_tag(tag) for tag in request.tags)

        store = self.store
        if team_id:
            team = store.get_team(team_id)
            if team is None:
                raise NotFoundError(f"Team {team_id} not found")
            if role_of(team, owner_id) is None:
                raise PermissionError("Only team members can create team prompts")

        scope = _quota_scope(owner_id, team_id)
        guard = QuotaGuard(self._store)
        snapshot = guard.snapshot(scope)
        decision = evaluate_quota(snapshot.plan, snapshot.current, snapshot.limit)
        if not decision.allowed:
            guard.report_denied(scope, decision, owner_id)
            raise _quota_error(decision)

        if not store.try_increment_prompt_count(scope, effective_limit(snapshot)):
            # Another create took the last slot after our read
            snapshot = guard.snapshot(scope)
            decision = evaluate_quota(snapshot.plan, snapshot.current, snapshot.limit)
            guard.report_denied(scope, decision, owner_id)
            raise _quota_error(decision)

        prompt = Prompt(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            team_id=team_id,
            title=request.title,
            content=request.content,
            tags=clean_tags,
            visibility=request.visibility,
        )
        try:
            stored = store.insert_prompt(prompt)
        except Exception:
            store.decrement_prompt_count(scope)
            raise

        record_audit_event(
            actor_id=owner_id,
            action="create_prompt",
            target_type="prompt",
            target_id=stored.id,
            details={"team_id": team_id, "tags": stored.sorted_tags()},
        )
        return stored

    def delete_prompt(self, prompt_id, actor_id) -> Prompt:
        prompt_id = normalize_id(prompt_id)
        actor_id = normalize_id(actor_id)
        store = self.store

        prompt = store.get_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")

        team = store.get_team(prompt.team_id) if prompt.team_id else None
        if prompt.team_id and team is None:
            # Team is gone; only the creator can clean up
            allowed = same_identity(prompt.owner_id, actor_id)
        else:
            allowed = can_manage_prompt(team, actor_id, prompt, PromptAction.DELETE)
        if not allowed:
            raise PermissionError("You do not have permission to delete this prompt")

        removed = store.remove_prompt(prompt_id)
        if removed is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")
        store.decrement_prompt_count(_quota_scope(removed.owner_id, removed.team_id))

        record_audit_event(
            actor_id=actor_id,
            action="delete_prompt",
            target_type="prompt",
            target_id=prompt_id,
            details={"team_id": removed.team_id, "owner_id": removed.owner_id},
        )
        return removed
