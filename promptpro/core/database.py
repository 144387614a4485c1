"""
SQL engine, sessions and table definitions for the document store.

The engine is created lazily from TEST_DATABASE_URL / DATABASE_URL and rebuilt
when that URL changes. sqlite URLs run on a single shared connection so an
in-memory database is visible to every session.
"""
import logging
import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from promptpro.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

# QueuePool sizing for server databases
_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
}

_engine: Optional[Engine] = None
_engine_url: Optional[str] = None
_session_factory = None


def get_database_url() -> Optional[str]:
    return os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    return create_engine(url, poolclass=QueuePool, **_POOL_OPTIONS)


def get_engine() -> Engine:
    """Current engine; rebuilt when the configured URL differs from the cached one."""
    global _engine, _engine_url, _session_factory
    url = get_database_url()
    if _engine is not None and (not url or url == _engine_url):
        return _engine
    if not url:
        raise ValueError("DATABASE_URL is not configured")
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(url)
    _engine_url = url
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    logger.info("database.engine_ready dialect=%s", _engine.dialect.name)
    return _engine


def dispose_engine() -> None:
    global _engine, _engine_url, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = _engine_url = _session_factory = None


@contextmanager
def get_db_session():
    """Session scope: commit on clean exit, roll back and re-raise otherwise."""
    get_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def reset_database() -> None:
    """Drop and recreate every table. Tests only."""
    engine = get_engine()
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    if not get_database_url():
        return False
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except Exception as exc:
        logger.warning("database.unreachable", extra={"operation": "check_connection", "error_code": type(exc).__name__})
        return False
    return True


# Users (identity + denormalized plan cache)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=False, unique=True),
    Column('name', Text, nullable=True),
    Column('plan', String(20), nullable=False, server_default='Free'),
    Column('prompt_count', Integer, nullable=False, server_default='0'),
    Column('customer_ref', String(100), nullable=True),
    Column('subscription_ref', String(100), nullable=True, index=True),
    Column('plan_synced_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_email', 'email'),
)

# Teams; version is the optimistic concurrency token for membership writes
teams = Table(
    'teams',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', String(100), nullable=False),
    Column('description', Text, nullable=True),
    Column('plan', String(20), nullable=False, server_default='Free'),
    Column('prompt_limit', Integer, nullable=False),
    Column('prompt_count', Integer, nullable=False, server_default='0'),
    Column('customer_ref', String(100), nullable=True),
    Column('subscription_ref', String(100), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('plan_synced_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_teams_subscription_ref', 'subscription_ref'),
)

team_members = Table(
    'team_members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('team_id', String(100), ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('role', String(20), nullable=False),
    Column('position', Integer, nullable=False),
    Column('joined_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('team_id', 'user_id', name='uq_team_members_team_user'),
    Index('idx_team_members_team_position', 'team_id', 'position'),
    Index('idx_team_members_user', 'user_id'),
)

prompts = Table(
    'prompts',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('team_id', String(100), nullable=True, index=True),
    Column('title', Text, nullable=False),
    Column('content', Text, nullable=False),
    Column('visibility', String(20), nullable=False, server_default='private'),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# One row per (prompt, tag); the tag column is the taxonomy join key
prompt_tags = Table(
    'prompt_tags',
    metadata,
    Column('prompt_id', String(100), ForeignKey('prompts.id', ondelete='CASCADE'), nullable=False),
    Column('tag', String(100), nullable=False),
    PrimaryKeyConstraint('prompt_id', 'tag', name='pk_prompt_tags'),
    Index('idx_prompt_tags_tag', 'tag'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('outcome', String(50), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_id', name='uq_billing_events_event_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)

audit_events = Table(
    'audit_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('ts', DateTime(timezone=True), nullable=False, index=True),
    Column('request_id', String(100), nullable=True),
    Column('actor_id', String(100), nullable=True, index=True),
    Column('action', String(100), nullable=False, index=True),
    Column('target_type', String(50), nullable=True),
    Column('target_id', String(100), nullable=True),
    Column('details', JSON, nullable=True),
    Index('idx_audit_events_target', 'target_type', 'target_id', 'ts'),
    Index('idx_audit_events_actor_ts', 'actor_id', 'ts'),
)
