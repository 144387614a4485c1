"""
promptpro/core/persistence.py

SQL persistence layer (SQLAlchemy Core) implementing the DocumentStore
contract from promptpro.core.store.

Team writes are optimistic: UPDATE ... WHERE version = :expected, and a
zero rowcount means another writer got there first. Prompt tag rewrites use
the same check on the prompt row and only touch prompt_tags, so a concurrent
edit of title/content is never clobbered.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.exc import IntegrityError

from promptpro.core.database import (
    get_db_session,
    create_all_tables,
    users,
    teams,
    team_members,
    prompts,
    prompt_tags,
    billing_events,
)
from promptpro.core.errors import ConflictError, VersionConflictError
from promptpro.core.store import TagTransform, TagWrite
from promptpro.models.identity import normalize_email, normalize_id
from promptpro.models.prompt import Prompt, Visibility
from promptpro.models.scope import QuotaScope, QuotaScopeKind, ScopeKind, TaxonomyScope
from promptpro.models.team import BillingRef, Membership, Plan, Role, Team
from promptpro.models.user import User


# Attempts for a single prompt tag rewrite before giving up
TAG_WRITE_ATTEMPTS = 5


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqlStore:
    """
    SQL-backed DocumentStore.

    Provides the same interface as InMemoryStore but with durability.
    """

    def __init__(self, ensure_schema: bool = True):
        if ensure_schema:
            create_all_tables()

    # Teams

    @staticmethod
    def _load_team(session, team_id: str) -> Optional[Team]:
        row = session.execute(select(teams).where(teams.c.id == team_id)).first()
        if not row:
            return None
        member_rows = session.execute(
            select(team_members)
            .where(team_members.c.team_id == team_id)
            .order_by(team_members.c.position)
        ).all()
        return Team(
            id=row.id,
            name=row.name,
            description=row.description,
            plan=Plan(row.plan),
            prompt_limit=row.prompt_limit,
            prompt_count=row.prompt_count,
            members=[
                Membership(user_id=m.user_id, role=Role(m.role), joined_at=_aware(m.joined_at))
                for m in member_rows
            ],
            billing_ref=BillingRef(customer_ref=row.customer_ref, subscription_ref=row.subscription_ref),
            version=row.version,
            plan_synced_at=_aware(row.plan_synced_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _write_members(session, team: Team) -> None:
        session.execute(delete(team_members).where(team_members.c.team_id == team.id))
        for position, membership in enumerate(team.members):
            session.execute(
                insert(team_members).values(
                    team_id=team.id,
                    user_id=membership.user_id,
                    role=membership.role.value,
                    position=position,
                    joined_at=membership.joined_at,
                )
            )

    def get_team(self, team_id: str) -> Optional[Team]:
        with get_db_session() as session:
            return self._load_team(session, normalize_id(team_id))

    def insert_team(self, team: Team) -> Team:
        now = _now()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(teams).values(
                        id=team.id,
                        name=team.name,
                        description=team.description,
                        plan=team.plan.value,
                        prompt_limit=team.prompt_limit,
                        prompt_count=team.prompt_count,
                        customer_ref=team.billing_ref.customer_ref,
                        subscription_ref=team.billing_ref.subscription_ref,
                        version=0,
                        plan_synced_at=team.plan_synced_at,
                        created_at=team.created_at or now,
                        updated_at=now,
                    )
                )
                self._write_members(session, team)
                return self._load_team(session, team.id)
        except IntegrityError:
            raise ConflictError(f"Team {team.id} already exists")

    def replace_team(self, team: Team, expected_version: int) -> Team:
        with get_db_session() as session:
            result = session.execute(
                update(teams)
                .where(teams.c.id == team.id)
                .where(teams.c.version == expected_version)
                .values(
                    name=team.name,
                    description=team.description,
                    plan=team.plan.value,
                    prompt_limit=team.prompt_limit,
                    customer_ref=team.billing_ref.customer_ref,
                    subscription_ref=team.billing_ref.subscription_ref,
                    plan_synced_at=team.plan_synced_at,
                    version=expected_version + 1,
                    updated_at=_now(),
                )
            )
            if result.rowcount != 1:
                raise VersionConflictError(
                    f"Team {team.id} changed (expected v{expected_version})"
                )
            self._write_members(session, team)
            return self._load_team(session, team.id)

    def delete_team(self, team_id: str, expected_version: int) -> bool:
        team_id = normalize_id(team_id)
        with get_db_session() as session:
            exists = session.execute(select(teams.c.version).where(teams.c.id == team_id)).first()
            if not exists:
                return False
            result = session.execute(
                delete(teams)
                .where(teams.c.id == team_id)
                .where(teams.c.version == expected_version)
            )
            if result.rowcount != 1:
                raise VersionConflictError(f"Team {team_id} changed before delete")
            session.execute(delete(team_members).where(team_members.c.team_id == team_id))
            return True

    def find_team_by_subscription(self, subscription_ref: str) -> Optional[Team]:
        with get_db_session() as session:
            row = session.execute(
                select(teams.c.id).where(teams.c.subscription_ref == subscription_ref).limit(1)
            ).first()
            if not row:
                return None
            return self._load_team(session, row.id)

    # Users

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=row.user_id,
            email=row.email,
            name=row.name,
            plan=Plan(row.plan),
            prompt_count=row.prompt_count,
            billing_ref=BillingRef(customer_ref=row.customer_ref, subscription_ref=row.subscription_ref),
            plan_synced_at=_aware(row.plan_synced_at),
            created_at=_aware(row.created_at),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with get_db_session() as session:
            row = session.execute(select(users).where(users.c.user_id == normalize_id(user_id))).first()
            return self._row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with get_db_session() as session:
            row = session.execute(select(users).where(users.c.email == normalize_email(email))).first()
            return self._row_to_user(row) if row else None

    def find_user_by_subscription(self, subscription_ref: str) -> Optional[User]:
        with get_db_session() as session:
            row = session.execute(
                select(users).where(users.c.subscription_ref == subscription_ref).limit(1)
            ).first()
            return self._row_to_user(row) if row else None

    def save_user(self, user: User) -> User:
        values = dict(
            email=user.email,
            name=user.name,
            plan=user.plan.value,
            customer_ref=user.billing_ref.customer_ref,
            subscription_ref=user.billing_ref.subscription_ref,
            plan_synced_at=user.plan_synced_at,
        )
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(users.c.user_id).where(users.c.user_id == user.id)
                ).first()
                if existing:
                    session.execute(update(users).where(users.c.user_id == user.id).values(**values))
                else:
                    session.execute(
                        insert(users).values(
                            user_id=user.id,
                            prompt_count=user.prompt_count,
                            created_at=user.created_at or _now(),
                            **values,
                        )
                    )
                row = session.execute(select(users).where(users.c.user_id == user.id)).first()
                return self._row_to_user(row)
        except IntegrityError:
            raise ConflictError(f"Email {user.email} already registered")

    def update_user_plan(
        self, user_id: str, plan: Plan, billing_ref: BillingRef, synced_at: datetime
    ) -> Optional[User]:
        user_id = normalize_id(user_id)
        with get_db_session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .where(or_(users.c.plan_synced_at.is_(None), users.c.plan_synced_at <= synced_at))
                .values(
                    plan=plan.value,
                    customer_ref=billing_ref.customer_ref,
                    subscription_ref=billing_ref.subscription_ref,
                    plan_synced_at=synced_at,
                )
            )
            row = session.execute(select(users).where(users.c.user_id == user_id)).first()
            if row is None:
                return None
            if result.rowcount != 1:
                raise VersionConflictError(f"User {user_id} already synced at {row.plan_synced_at}")
            return self._row_to_user(row)

    # Quota counters

    @staticmethod
    def _counter_target(scope: QuotaScope):
        if scope.kind == QuotaScopeKind.PERSONAL:
            return users, users.c.user_id
        return teams, teams.c.id

    def get_prompt_count(self, scope: QuotaScope) -> Optional[int]:
        table, key = self._counter_target(scope)
        with get_db_session() as session:
            row = session.execute(select(table.c.prompt_count).where(key == scope.subject_id)).first()
            return row.prompt_count if row else None

    def try_increment_prompt_count(self, scope: QuotaScope, limit: Optional[int]) -> bool:
        table, key = self._counter_target(scope)
        stmt = update(table).where(key == scope.subject_id)
        if limit is not None:
            stmt = stmt.where(table.c.prompt_count < limit)
        with get_db_session() as session:
            result = session.execute(stmt.values(prompt_count=table.c.prompt_count + 1))
            return result.rowcount == 1

    def decrement_prompt_count(self, scope: QuotaScope) -> None:
        table, key = self._counter_target(scope)
        with get_db_session() as session:
            session.execute(
                update(table)
                .where(key == scope.subject_id)
                .where(table.c.prompt_count > 0)
                .values(prompt_count=table.c.prompt_count - 1)
            )

    # Prompts

    @staticmethod
    def _row_to_prompt(row, tags: Iterable[str]) -> Prompt:
        return Prompt(
            id=row.id,
            owner_id=row.owner_id,
            team_id=row.team_id,
            title=row.title,
            content=row.content,
            tags=frozenset(tags),
            visibility=Visibility(row.visibility),
            version=row.version,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _load_tags(session, prompt_ids: List[str]) -> Dict[str, set]:
        tags_by_prompt: Dict[str, set] = {pid: set() for pid in prompt_ids}
        if not prompt_ids:
            return tags_by_prompt
        rows = session.execute(
            select(prompt_tags).where(prompt_tags.c.prompt_id.in_(prompt_ids))
        ).all()
        for row in rows:
            tags_by_prompt[row.prompt_id].add(row.tag)
        return tags_by_prompt

    @staticmethod
    def _scope_filter(stmt, scope: TaxonomyScope):
        if scope.kind == ScopeKind.OWNER:
            return stmt.where(prompts.c.owner_id == scope.subject_id)
        if scope.kind == ScopeKind.TEAM:
            return stmt.where(prompts.c.team_id == scope.subject_id)
        return stmt

    def insert_prompt(self, prompt: Prompt) -> Prompt:
        now = _now()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(prompts).values(
                        id=prompt.id,
                        owner_id=prompt.owner_id,
                        team_id=prompt.team_id,
                        title=prompt.title,
                        content=prompt.content,
                        visibility=prompt.visibility.value,
                        version=prompt.version,
                        created_at=prompt.created_at or now,
                        updated_at=now,
                    )
                )
                for tag in prompt.sorted_tags():
                    session.execute(insert(prompt_tags).values(prompt_id=prompt.id, tag=tag))
        except IntegrityError:
            raise ConflictError(f"Prompt {prompt.id} already exists")
        return self.get_prompt(prompt.id)

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        prompt_id = normalize_id(prompt_id)
        with get_db_session() as session:
            row = session.execute(select(prompts).where(prompts.c.id == prompt_id)).first()
            if not row:
                return None
            tags = self._load_tags(session, [prompt_id])[prompt_id]
            return self._row_to_prompt(row, tags)

    def remove_prompt(self, prompt_id: str) -> Optional[Prompt]:
        prompt_id = normalize_id(prompt_id)
        with get_db_session() as session:
            row = session.execute(select(prompts).where(prompts.c.id == prompt_id)).first()
            if not row:
                return None
            tags = self._load_tags(session, [prompt_id])[prompt_id]
            session.execute(delete(prompt_tags).where(prompt_tags.c.prompt_id == prompt_id))
            session.execute(delete(prompts).where(prompts.c.id == prompt_id))
            return self._row_to_prompt(row, tags)

    def find_prompts_by_tags(self, tags: Iterable[str], scope: TaxonomyScope) -> List[Prompt]:
        wanted = sorted(set(tags))
        if not wanted:
            return []
        matching_ids = (
            select(prompt_tags.c.prompt_id)
            .where(prompt_tags.c.tag.in_(wanted))
            .distinct()
        )
        stmt = self._scope_filter(select(prompts).where(prompts.c.id.in_(matching_ids)), scope)
        with get_db_session() as session:
            rows = session.execute(stmt.order_by(prompts.c.id)).all()
            tags_by_prompt = self._load_tags(session, [row.id for row in rows])
            return [self._row_to_prompt(row, tags_by_prompt[row.id]) for row in rows]

    def update_prompt_tags(self, prompt_id: str, transform: TagTransform) -> Optional[TagWrite]:
        prompt_id = normalize_id(prompt_id)
        for _ in range(TAG_WRITE_ATTEMPTS):
            with get_db_session() as session:
                row = session.execute(select(prompts).where(prompts.c.id == prompt_id)).first()
                if not row:
                    return None
                current_tags = frozenset(self._load_tags(session, [prompt_id])[prompt_id])
                new_tags = frozenset(transform(current_tags))
                if new_tags == current_tags:
                    return TagWrite(self._row_to_prompt(row, current_tags), False)

                now = _now()
                result = session.execute(
                    update(prompts)
                    .where(prompts.c.id == prompt_id)
                    .where(prompts.c.version == row.version)
                    .values(version=row.version + 1, updated_at=now)
                )
                if result.rowcount != 1:
                    # Lost the race on this record; re-read and re-apply
                    continue
                session.execute(delete(prompt_tags).where(prompt_tags.c.prompt_id == prompt_id))
                for tag in sorted(new_tags):
                    session.execute(insert(prompt_tags).values(prompt_id=prompt_id, tag=tag))
                updated = self._row_to_prompt(row, new_tags).model_copy(
                    update={"version": row.version + 1, "updated_at": now}
                )
                return TagWrite(updated, True)
        raise VersionConflictError(f"Prompt {prompt_id} kept changing during tag update")

    def tag_counts(self, scope: TaxonomyScope) -> Dict[str, int]:
        stmt = (
            select(prompt_tags.c.tag, func.count().label("uses"))
            .select_from(prompt_tags.join(prompts, prompts.c.id == prompt_tags.c.prompt_id))
            .group_by(prompt_tags.c.tag)
        )
        stmt = self._scope_filter(stmt, scope)
        with get_db_session() as session:
            return {row.tag: row.uses for row in session.execute(stmt).all()}

    # Billing event ledger

    def has_processed_event(self, event_id: str) -> bool:
        with get_db_session() as session:
            row = session.execute(
                select(billing_events.c.id).where(billing_events.c.event_id == event_id)
            ).first()
            return row is not None

    def record_processed_event(self, event_id: str, event_type: str, outcome: str) -> bool:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        event_id=event_id,
                        event_type=event_type,
                        outcome=outcome,
                        received_at=_now(),
                    )
                )
            return True
        except IntegrityError:
            # Another worker recorded the same event first
            return False

    def processed_event_outcome(self, event_id: str) -> Optional[str]:
        with get_db_session() as session:
            row = session.execute(
                select(billing_events.c.outcome).where(billing_events.c.event_id == event_id)
            ).first()
            return row.outcome if row is not None else None

    def settle_processed_event(self, event_id: str, outcome: str) -> None:
        with get_db_session() as session:
            session.execute(
                update(billing_events).where(billing_events.c.event_id == event_id).values(outcome=outcome)
            )

    def release_processed_event(self, event_id: str) -> None:
        with get_db_session() as session:
            session.execute(delete(billing_events).where(billing_events.c.event_id == event_id))
