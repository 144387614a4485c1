"""Quota-guarded prompt create/delete."""
import threading

import pytest
from unittest.mock import patch

from promptpro.core.config import settings
from promptpro.core.errors import NotFoundError, PermissionError, QuotaExceededError, StoreError, ValidationError
from promptpro.features.membership.service import MembershipService
from promptpro.features.prompts.service import PromptService
from promptpro.models.scope import QuotaScope
from promptpro.models.team import Plan


CONTENT = "Write a haiku about the sea."


@pytest.fixture
def prompts(store):
    return PromptService(store)


def test_create_counts_against_personal_quota(store, prompts, make_user):
    make_user("u1")
    prompt = prompts.create_prompt("u1", "Haiku", CONTENT, tags=["Poetry", "poetry", "sea"])
    assert prompt.tags == frozenset({"poetry", "sea"})
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 1


def test_free_user_capped_at_limit(store, prompts, make_user, monkeypatch):
    monkeypatch.setattr(settings, "FREE_PERSONAL_PROMPT_LIMIT", 3)
    make_user("u1")
    for i in range(3):
        prompts.create_prompt("u1", f"Prompt {i}", CONTENT)

    with pytest.raises(QuotaExceededError):
        prompts.create_prompt("u1", "One more", CONTENT)
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 3


def test_pro_user_not_capped(store, prompts, make_user, monkeypatch):
    monkeypatch.setattr(settings, "FREE_PERSONAL_PROMPT_LIMIT", 1)
    make_user("u1", plan=Plan.PRO)
    for i in range(3):
        prompts.create_prompt("u1", f"Prompt {i}", CONTENT)
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 3


def test_concurrent_creates_at_limit_minus_one(store, prompts, make_user, monkeypatch):
    monkeypatch.setattr(settings, "FREE_PERSONAL_PROMPT_LIMIT", 5)
    make_user("u1")
    for i in range(4):
        prompts.create_prompt("u1", f"Prompt {i}", CONTENT)

    barrier = threading.Barrier(8)
    outcomes = []

    def create(i):
        barrier.wait()
        try:
            prompts.create_prompt("u1", f"Race {i}", CONTENT)
            outcomes.append("ok")
        except QuotaExceededError:
            outcomes.append("denied")

    threads = [threading.Thread(target=create, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("denied") == 7
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 5


def test_team_prompt_uses_team_counter(store, prompts, make_user, monkeypatch):
    monkeypatch.setattr(settings, "FREE_TEAM_PROMPT_LIMIT", 1)
    make_user("u1")
    make_user("u2")
    team = MembershipService(store).create_team("u1", "Team").team

    prompts.create_prompt("u1", "Team prompt", CONTENT, team_id=team.id)
    assert store.get_prompt_count(QuotaScope.team(team.id)) == 1
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 0

    with pytest.raises(QuotaExceededError):
        prompts.create_prompt("u1", "Another", CONTENT, team_id=team.id)
    with pytest.raises(PermissionError):
        prompts.create_prompt("u2", "Outsider", CONTENT, team_id=team.id)


def test_invalid_input(prompts, make_user):
    make_user("u1")
    with pytest.raises(ValidationError):
        prompts.create_prompt("u1", "Hi", CONTENT)
    with pytest.raises(ValidationError):
        prompts.create_prompt("u1", "Title", "too short")
    with pytest.raises(ValidationError):
        prompts.create_prompt("u1", "Title", CONTENT, tags=["x" * 21])


def test_failed_insert_releases_slot(store, prompts, make_user):
    make_user("u1")
    with patch.object(store, "insert_prompt", side_effect=StoreError("down")):
        with pytest.raises(StoreError):
            prompts.create_prompt("u1", "Title", CONTENT)
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 0


def test_delete_decrements_and_checks_permission(store, prompts, make_user):
    make_user("u1")
    prompt = prompts.create_prompt("u1", "Title", CONTENT)

    with pytest.raises(PermissionError):
        prompts.delete_prompt(prompt.id, "u2")

    prompts.delete_prompt(prompt.id, "u1")
    assert store.get_prompt(prompt.id) is None
    assert store.get_prompt_count(QuotaScope.personal("u1")) == 0

    with pytest.raises(NotFoundError):
        prompts.delete_prompt(prompt.id, "u1")
