"""
promptpro/core/store.py

Document store contract plus the in-memory implementation.

The store supplies exactly the primitives the core needs:
- atomic read-modify-write of one team document (optimistic `version`)
- prompt lookup by tag intersection within a scope
- per-prompt atomic tag-set transform (no other field is written)
- conditional counter increment for quota-guarded creates
- a user plan write that never moves plan_synced_at backwards
- a processed-event ledger for billing callbacks (claim, then settle or release)

`prompt_count` on users and teams belongs to the counter primitives only;
whole-document writes never overwrite it.

The in-memory store is the fallback when DATABASE_URL is not configured
(tests, local dev). `get_store()` picks SqlStore otherwise.
"""

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Protocol, Set

from promptpro.core.errors import ConflictError, VersionConflictError
from promptpro.models.identity import normalize_email, normalize_id, same_identity
from promptpro.models.prompt import Prompt
from promptpro.models.scope import QuotaScope, QuotaScopeKind, TaxonomyScope
from promptpro.models.team import BillingRef, Plan, Team
from promptpro.models.user import User


TagTransform = Callable[[FrozenSet[str]], FrozenSet[str]]


class TagWrite(NamedTuple):
    """Result of a per-record tag transform."""
    prompt: Prompt
    changed: bool


class DocumentStore(Protocol):
    """Storage contract consumed by the services."""

    # Teams
    def get_team(self, team_id: str) -> Optional[Team]: ...
    def insert_team(self, team: Team) -> Team: ...
    def replace_team(self, team: Team, expected_version: int) -> Team: ...
    def delete_team(self, team_id: str, expected_version: int) -> bool: ...
    def find_team_by_subscription(self, subscription_ref: str) -> Optional[Team]: ...

    # Users
    def get_user(self, user_id: str) -> Optional[User]: ...
    def find_user_by_email(self, email: str) -> Optional[User]: ...
    def save_user(self, user: User) -> User: ...
    def find_user_by_subscription(self, subscription_ref: str) -> Optional[User]: ...
    def update_user_plan(
        self, user_id: str, plan: Plan, billing_ref: BillingRef, synced_at: datetime
    ) -> Optional[User]: ...  # VersionConflictError when a newer sync is stored

    # Quota counters
    def get_prompt_count(self, scope: QuotaScope) -> Optional[int]: ...
    def try_increment_prompt_count(self, scope: QuotaScope, limit: Optional[int]) -> bool: ...
    def decrement_prompt_count(self, scope: QuotaScope) -> None: ...

    # Prompts
    def insert_prompt(self, prompt: Prompt) -> Prompt: ...
    def get_prompt(self, prompt_id: str) -> Optional[Prompt]: ...
    def remove_prompt(self, prompt_id: str) -> Optional[Prompt]: ...
    def find_prompts_by_tags(self, tags: Iterable[str], scope: TaxonomyScope) -> List[Prompt]: ...
    def update_prompt_tags(self, prompt_id: str, transform: TagTransform) -> Optional[TagWrite]: ...
    def tag_counts(self, scope: TaxonomyScope) -> Dict[str, int]: ...

    # Billing event ledger
    def has_processed_event(self, event_id: str) -> bool: ...
    def processed_event_outcome(self, event_id: str) -> Optional[str]: ...
    def record_processed_event(self, event_id: str, event_type: str, outcome: str) -> bool: ...
    def settle_processed_event(self, event_id: str, outcome: str) -> None: ...
    def release_processed_event(self, event_id: str) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """
    Thread-safe in-memory DocumentStore.

    The lock is held only for a single primitive (one team write, one prompt
    transform), never across a taxonomy batch.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._teams: Dict[str, Team] = {}
        self._users: Dict[str, User] = {}
        self._prompts: Dict[str, Prompt] = {}
        self._events: Dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._teams.clear()
            self._users.clear()
            self._prompts.clear()
            self._events.clear()

    # Teams

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._lock:
            return self._teams.get(normalize_id(team_id))

    def insert_team(self, team: Team) -> Team:
        with self._lock:
            if team.id in self._teams:
                raise ConflictError(f"Team {team.id} already exists")
            now = _now()
            stored = team.model_copy(update={
                "version": 0,
                "created_at": team.created_at or now,
                "updated_at": now,
            })
            self._teams[team.id] = stored
            return stored

    def replace_team(self, team: Team, expected_version: int) -> Team:
        with self._lock:
            current = self._teams.get(team.id)
            if current is None:
                raise VersionConflictError(f"Team {team.id} no longer exists")
            if current.version != expected_version:
                raise VersionConflictError(
                    f"Team {team.id} changed (expected v{expected_version}, found v{current.version})"
                )
            stored = team.model_copy(update={
                "version": expected_version + 1,
                "prompt_count": current.prompt_count,
                "created_at": current.created_at,
                "updated_at": _now(),
            })
            self._teams[team.id] = stored
            return stored

    def delete_team(self, team_id: str, expected_version: int) -> bool:
        with self._lock:
            team_id = normalize_id(team_id)
            current = self._teams.get(team_id)
            if current is None:
                return False
            if current.version != expected_version:
                raise VersionConflictError(f"Team {team_id} changed before delete")
            del self._teams[team_id]
            return True

    def find_team_by_subscription(self, subscription_ref: str) -> Optional[Team]:
        with self._lock:
            for team in self._teams.values():
                if same_identity(team.billing_ref.subscription_ref, subscription_ref):
                    return team
            return None

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(normalize_id(user_id))

    def find_user_by_email(self, email: str) -> Optional[User]:
        target = normalize_email(email)
        with self._lock:
            for user in self._users.values():
                if user.email == target:
                    return user
            return None

    def save_user(self, user: User) -> User:
        with self._lock:
            for other in self._users.values():
                if other.email == user.email and other.id != user.id:
                    raise ConflictError(f"Email {user.email} already registered")
            current = self._users.get(user.id)
            if current is not None:
                user = user.model_copy(update={
                    "prompt_count": current.prompt_count,
                    "created_at": current.created_at,
                })
            elif user.created_at is None:
                user = user.model_copy(update={"created_at": _now()})
            self._users[user.id] = user
            return user

    def find_user_by_subscription(self, subscription_ref: str) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if same_identity(user.billing_ref.subscription_ref, subscription_ref):
                    return user
            return None

    def update_user_plan(
        self, user_id: str, plan: Plan, billing_ref: BillingRef, synced_at: datetime
    ) -> Optional[User]:
        with self._lock:
            current = self._users.get(normalize_id(user_id))
            if current is None:
                return None
            if current.plan_synced_at is not None and synced_at < current.plan_synced_at:
                raise VersionConflictError(f"User {current.id} already synced at {current.plan_synced_at.isoformat()}")
            updated = current.model_copy(update={
                "plan": plan,
                "billing_ref": billing_ref,
                "plan_synced_at": synced_at,
            })
            self._users[current.id] = updated
            return updated

    # Quota counters

    def _counter_owner(self, scope: QuotaScope):
        if scope.kind == QuotaScopeKind.PERSONAL:
            return self._users, self._users.get(scope.subject_id)
        return self._teams, self._teams.get(scope.subject_id)

    def get_prompt_count(self, scope: QuotaScope) -> Optional[int]:
        with self._lock:
            _, doc = self._counter_owner(scope)
            return doc.prompt_count if doc is not None else None

    def try_increment_prompt_count(self, scope: QuotaScope, limit: Optional[int]) -> bool:
        with self._lock:
            collection, doc = self._counter_owner(scope)
            if doc is None:
                return False
            if limit is not None and doc.prompt_count >= limit:
                return False
            collection[doc.id] = doc.model_copy(update={"prompt_count": doc.prompt_count + 1})
            return True

    def decrement_prompt_count(self, scope: QuotaScope) -> None:
        with self._lock:
            collection, doc = self._counter_owner(scope)
            if doc is None or doc.prompt_count <= 0:
                return
            collection[doc.id] = doc.model_copy(update={"prompt_count": doc.prompt_count - 1})

    # Prompts

    def insert_prompt(self, prompt: Prompt) -> Prompt:
        with self._lock:
            if prompt.id in self._prompts:
                raise ConflictError(f"Prompt {prompt.id} already exists")
            now = _now()
            stored = prompt.model_copy(update={
                "created_at": prompt.created_at or now,
                "updated_at": now,
            })
            self._prompts[prompt.id] = stored
            return stored

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        with self._lock:
            return self._prompts.get(normalize_id(prompt_id))

    def remove_prompt(self, prompt_id: str) -> Optional[Prompt]:
        with self._lock:
            return self._prompts.pop(normalize_id(prompt_id), None)

    def find_prompts_by_tags(self, tags: Iterable[str], scope: TaxonomyScope) -> List[Prompt]:
        wanted: Set[str] = set(tags)
        with self._lock:
            return [
                prompt for prompt in self._prompts.values()
                if scope.contains(prompt) and prompt.tags & wanted
            ]

    def update_prompt_tags(self, prompt_id: str, transform: TagTransform) -> Optional[TagWrite]:
        with self._lock:
            current = self._prompts.get(normalize_id(prompt_id))
            if current is None:
                return None
            new_tags = frozenset(transform(current.tags))
            if new_tags == current.tags:
                return TagWrite(current, False)
            updated = current.model_copy(update={
                "tags": new_tags,
                "version": current.version + 1,
                "updated_at": _now(),
            })
            self._prompts[current.id] = updated
            return TagWrite(updated, True)

    def tag_counts(self, scope: TaxonomyScope) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for prompt in self._prompts.values():
                if not scope.contains(prompt):
                    continue
                for tag in prompt.tags:
                    counts[tag] = counts.get(tag, 0) + 1
        return counts

    # Billing event ledger

    def has_processed_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def processed_event_outcome(self, event_id: str) -> Optional[str]:
        with self._lock:
            return self._events.get(event_id)

    def record_processed_event(self, event_id: str, event_type: str, outcome: str) -> bool:
        """Insert-if-absent; False means another delivery holds the event id."""
        with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = outcome
            return True

    def settle_processed_event(self, event_id: str, outcome: str) -> None:
        with self._lock:
            if event_id in self._events:
                self._events[event_id] = outcome

    def release_processed_event(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)


# Process-wide fallback store (no DATABASE_URL)
_memory_store = InMemoryStore()
_sql_store = None


def get_memory_store() -> InMemoryStore:
    return _memory_store


def get_store() -> DocumentStore:
    """Return SqlStore when a database is configured, else the in-memory store."""
    global _sql_store
    from promptpro.core.database import get_database_url

    if not get_database_url():
        return _memory_store
    if _sql_store is None:
        from promptpro.core.persistence import SqlStore
        _sql_store = SqlStore()
    return _sql_store
