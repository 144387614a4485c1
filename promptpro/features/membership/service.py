"""
promptpro/features/membership/service.py

Team membership lifecycle: create team, add / update role / remove member,
list members, delete team.

Every mutation is a read-decide-write cycle on one team document guarded by
the team's `version`. A lost race re-reads the team and re-runs the rules, so
two concurrent calls never both succeed against the same snapshot (no lost
member, no resurrected member, no second owner).

Expected outcomes (forbidden, not a member, ...) come back as a
MembershipResult; only store failures raise.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from promptpro.core.config import settings
from promptpro.core.errors import ValidationError, VersionConflictError
from promptpro.core.logging import log_event
from promptpro.core.store import DocumentStore, get_store
from promptpro.features.audit.service import record_audit_event
from promptpro.features.plans.service import prompt_limit_for
from promptpro.features.roles.service import role_of, satisfies
from promptpro.models.identity import normalize_email, normalize_id, same_identity
from promptpro.models.scope import QuotaScopeKind
from promptpro.models.team import ASSIGNABLE_ROLES, Membership, Plan, Role, Team
from promptpro.models.user import User


logger = logging.getLogger(__name__)


class MembershipStatus(str, Enum):
    OK = "ok"
    NOT_A_MEMBER = "not_a_member"
    ALREADY_MEMBER = "already_member"
    USER_NOT_FOUND = "user_not_found"
    FORBIDDEN = "forbidden"
    OWNER_INVARIANT_VIOLATION = "owner_invariant_violation"
    TEAM_NOT_FOUND = "team_not_found"


@dataclass(frozen=True)
class MembershipResult:
    status: MembershipStatus
    team: Optional[Team] = None
    membership: Optional[Membership] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == MembershipStatus.OK


class UserDirectory(Protocol):
    """Resolves an email to an existing account. Never creates users."""

    def find_by_email(self, email: str) -> Optional[User]: ...


class StoreUserDirectory:
    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store

    def find_by_email(self, email: str) -> Optional[User]:
        return (self._store or get_store()).find_user_by_email(normalize_email(email))


# decide() returns either a final result or (new team document, affected membership)
Decision = Union[MembershipResult, Tuple[Team, Optional[Membership]]]


def _fail(status: MembershipStatus, message: str, team: Optional[Team] = None) -> MembershipResult:
    return MembershipResult(status=status, team=team, message=message)


def _parse_role(value) -> Role:
    try:
        return Role.parse(value)
    except ValueError:
        raise ValidationError(f"Unknown role: {value}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MembershipService:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        directory: Optional[UserDirectory] = None,
        max_retries: Optional[int] = None,
    ):
        self._store = store
        self._directory = directory
        self._max_retries = max_retries

    @property
    def store(self) -> DocumentStore:
        return self._store or get_store()

    @property
    def directory(self) -> UserDirectory:
        return self._directory or StoreUserDirectory(self._store)

    @property
    def max_retries(self) -> int:
        if self._max_retries is None:
            return settings.MEMBERSHIP_MAX_RETRIES
        return self._max_retries

    # Core read-decide-write loop

    def _mutate(
        self,
        team_id: str,
        actor_id: str,
        action: str,
        decide: Callable[[Team], Decision],
        details: Optional[dict] = None,
    ) -> MembershipResult:
        team_id = normalize_id(team_id)
        store = self.store

        for attempt in range(1, self.max_retries + 2):
            team = store.get_team(team_id)
            if team is None:
                return self._finish(_fail(MembershipStatus.TEAM_NOT_FOUND, f"Team {team_id} not found"),
                                    actor_id, action, team_id, details)

            decision = decide(team)
            if isinstance(decision, MembershipResult):
                return self._finish(decision, actor_id, action, team_id, details)

            new_team, membership = decision
            if len(new_team.owners()) != 1:
                return self._finish(
                    _fail(MembershipStatus.OWNER_INVARIANT_VIOLATION,
                          "Team must have exactly one owner", team),
                    actor_id, action, team_id, details,
                )

            try:
                stored = store.replace_team(new_team, team.version)
            except VersionConflictError:
                logger.info(
                    "[membership] version conflict, retrying",
                    extra={"team_id": team_id, "operation": action, "attempt": attempt},
                )
                continue

            result = MembershipResult(status=MembershipStatus.OK, team=stored, membership=membership)
            return self._finish(result, actor_id, action, team_id, details)

        logger.warning(
            "[membership] retries exhausted",
            extra={"team_id": team_id, "operation": action, "attempts": self.max_retries + 1},
        )
        raise VersionConflictError(f"Team {team_id} is being modified concurrently, try again")

    @staticmethod
    def _finish(
        result: MembershipResult,
        actor_id: str,
        action: str,
        team_id: str,
        details: Optional[dict],
    ) -> MembershipResult:
        audit_details = dict(details or {})
        if not result.ok:
            audit_details["status"] = result.status.value
        record_audit_event(
            actor_id=actor_id,
            action=action if result.ok else f"{action}_denied",
            target_type="team",
            target_id=team_id,
            details=audit_details,
        )
        log_event(
            "info" if result.ok else "warning",
            f"[membership] {action} {result.status.value}",
            actor_id=actor_id,
            team_id=team_id,
            extra={"operation": action, "status": result.status.value},
        )
        return result

    # Operations

    def create_team(self, creator_id, name: str, description: Optional[str] = None) -> MembershipResult:
        creator_id = normalize_id(creator_id)
        now = _now()
        try:
            team = Team(
                id=uuid.uuid4().hex,
                name=name,
                description=description,
                plan=Plan.FREE,
                prompt_limit=prompt_limit_for(Plan.FREE, QuotaScopeKind.TEAM),
                members=[Membership(user_id=creator_id, role=Role.OWNER, joined_at=now)],
                created_at=now,
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid team: {exc.errors()[0].get('msg', 'invalid')}")

        stored = self.store.insert_team(team)
        result = MembershipResult(status=MembershipStatus.OK, team=stored, membership=stored.members[0])
        return self._finish(result, creator_id, "create_team", stored.id, {"name": stored.name})

    def list_members(self, team_id, actor_id) -> MembershipResult:
        team_id = normalize_id(team_id)
        team = self.store.get_team(team_id)
        if team is None:
            return _fail(MembershipStatus.TEAM_NOT_FOUND, f"Team {team_id} not found")
        if role_of(team, actor_id) is None:
            return _fail(MembershipStatus.FORBIDDEN, "Only team members can view the member list")
        return MembershipResult(status=MembershipStatus.OK, team=team)

    def add_member(self, team_id, actor_id, target_email: str, role=Role.MEMBER) -> MembershipResult:
        actor_id = normalize_id(actor_id)
        role = _parse_role(role)
        email = normalize_email(target_email)
        if not email:
            raise ValidationError("Email is required")

        # Looked up once; the account cannot disappear between retries
        target_user = self.directory.find_by_email(email)

        def decide(team: Team) -> Decision:
            if not satisfies(role_of(team, actor_id), Role.ADMIN):
                return _fail(MembershipStatus.FORBIDDEN, "Only owners and admins can add members", team)
            if role not in ASSIGNABLE_ROLES:
                return _fail(MembershipStatus.FORBIDDEN, "Owner role cannot be assigned", team)
            if target_user is None:
                return _fail(MembershipStatus.USER_NOT_FOUND, f"No account for {email}", team)
            if team.member(target_user.id) is not None:
                return _fail(MembershipStatus.ALREADY_MEMBER, "User is already a member", team)

            membership = Membership(user_id=target_user.id, role=role, joined_at=_now())
            members: List[Membership] = list(team.members) + [membership]
            return team.model_copy(update={"members": members}), membership

        return self._mutate(
            team_id, actor_id, "add_team_member", decide,
            details={"role": role.value, "target_user_id": target_user.id if target_user else None},
        )

    def update_role(self, team_id, actor_id, target_user_id, new_role) -> MembershipResult:
        actor_id = normalize_id(actor_id)
        target_user_id = normalize_id(target_user_id)
        new_role = _parse_role(new_role)

        def decide(team: Team) -> Decision:
            if not satisfies(role_of(team, actor_id), Role.ADMIN):
                return _fail(MembershipStatus.FORBIDDEN, "Only owners and admins can change roles", team)
            target = team.member(target_user_id)
            if target is None:
                return _fail(MembershipStatus.NOT_A_MEMBER, "Target is not a member of this team", team)
            if target.role == Role.OWNER:
                return _fail(MembershipStatus.FORBIDDEN, "The owner's role cannot be changed", team)
            if new_role not in ASSIGNABLE_ROLES:
                return _fail(MembershipStatus.FORBIDDEN, "Owner role cannot be assigned", team)
            if target.role == new_role:
                return MembershipResult(status=MembershipStatus.OK, team=team, membership=target)

            updated = target.model_copy(update={"role": new_role})
            members = [updated if same_identity(m.user_id, target_user_id) else m for m in team.members]
            return team.model_copy(update={"members": members}), updated

        return self._mutate(
            team_id, actor_id, "update_team_member_role", decide,
            details={"target_user_id": target_user_id, "role": new_role.value},
        )

    def remove_member(self, team_id, actor_id, target_user_id) -> MembershipResult:
        actor_id = normalize_id(actor_id)
        target_user_id = normalize_id(target_user_id)
        self_targeted = same_identity(actor_id, target_user_id)

        def decide(team: Team) -> Decision:
            actor_role = role_of(team, actor_id)
            target = team.member(target_user_id)
            if target is None:
                if actor_role is None and not self_targeted:
                    return _fail(MembershipStatus.FORBIDDEN, "Only team members can remove members", team)
                return _fail(MembershipStatus.NOT_A_MEMBER, "Target is not a member of this team", team)
            if target.role == Role.OWNER:
                return _fail(MembershipStatus.FORBIDDEN, "The team owner cannot be removed", team)

            if self_targeted:
                allowed = satisfies(actor_role, Role.MEMBER, self_targeted=True)
            else:
                allowed = satisfies(actor_role, Role.ADMIN)
            if not allowed:
                return _fail(MembershipStatus.FORBIDDEN, "Only owners and admins can remove members", team)

            members = [m for m in team.members if not same_identity(m.user_id, target_user_id)]
            return team.model_copy(update={"members": members}), target

        action = "leave_team" if self_targeted else "remove_team_member"
        return self._mutate(team_id, actor_id, action, decide, details={"target_user_id": target_user_id})

    def delete_team(self, team_id, actor_id) -> MembershipResult:
        team_id = normalize_id(team_id)
        actor_id = normalize_id(actor_id)
        store = self.store

        for _ in range(self.max_retries + 1):
            team = store.get_team(team_id)
            if team is None:
                return self._finish(_fail(MembershipStatus.TEAM_NOT_FOUND, f"Team {team_id} not found"),
                                    actor_id, "delete_team", team_id, None)
            if not satisfies(role_of(team, actor_id), Role.OWNER):
                return self._finish(_fail(MembershipStatus.FORBIDDEN, "Only the owner can delete a team", team),
                                    actor_id, "delete_team", team_id, None)
            try:
                deleted = store.delete_team(team_id, team.version)
            except VersionConflictError:
                continue
            if not deleted:
                return self._finish(_fail(MembershipStatus.TEAM_NOT_FOUND, f"Team {team_id} not found"),
                                    actor_id, "delete_team", team_id, None)
            return self._finish(MembershipResult(status=MembershipStatus.OK, team=team),
                                actor_id, "delete_team", team_id, {"name": team.name})

        raise VersionConflictError(f"Team {team_id} is being modified concurrently, try again")
