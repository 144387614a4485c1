# promptpro/conftest.py
import sys
import pytest
from pathlib import Path

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def memory_backend(monkeypatch):
    """
    Run every test against the in-memory store by default.

    Clears DATABASE_URL so services pick InMemoryStore, and resets the store
    and audit buffer between tests.
    """
    from promptpro.core.config import settings
    from promptpro.core.store import get_memory_store
    from promptpro.features.audit.service import clear_buffered_audit_events

    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)
    monkeypatch.setattr(settings, "AUDIT_SAMPLE_RATE", 1.0)

    get_memory_store().reset()
    clear_buffered_audit_events()
    yield get_memory_store()
    get_memory_store().reset()
    clear_buffered_audit_events()


@pytest.fixture
def store(memory_backend):
    return memory_backend


@pytest.fixture
def sql_store(monkeypatch):
    """SqlStore on a fresh in-memory sqlite database."""
    from promptpro.core.database import dispose_engine, reset_database
    from promptpro.core.persistence import SqlStore

    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    dispose_engine()
    reset_database()
    yield SqlStore()
    dispose_engine()


@pytest.fixture
def make_user(store):
    """Create a user in the in-memory store."""
    from promptpro.models.user import User

    def _make(user_id, email=None, **fields):
        return store.save_user(User(id=user_id, email=email or f"{user_id}@example.com", **fields))

    return _make


@pytest.fixture
def audit_events():
    from promptpro.features.audit.service import get_buffered_audit_events

    return get_buffered_audit_events


@pytest.fixture
def auth_headers():
    def _headers(user_id):
        return {"X-User-Id": user_id}

    return _headers


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from promptpro.main import app

    return TestClient(app, raise_server_exceptions=False)
