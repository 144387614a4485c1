"""Role ranking and capability checks."""
import pytest

from promptpro.features.roles.service import (
    can_invite_members,
    can_manage_prompt,
    can_manage_team,
    can_remove_members,
    role_of,
    satisfies,
)
from promptpro.models.prompt import Prompt
from promptpro.models.team import Membership, Role, Team


def _team(*members):
    return Team(
        id="t1",
        name="Team",
        prompt_limit=10,
        members=[Membership(user_id=u, role=r) for u, r in members],
    )


def test_role_of_uses_value_identity():
    team = _team(("u1", Role.OWNER), ("42", Role.MEMBER))
    assert role_of(team, "u1") == Role.OWNER
    assert role_of(team, " u1 ") == Role.OWNER
    assert role_of(team, 42) == Role.MEMBER
    assert role_of(team, "nobody") is None
    assert role_of(None, "u1") is None


@pytest.mark.parametrize(
    "role,required,expected",
    [
        (Role.OWNER, Role.ADMIN, True),
        (Role.ADMIN, Role.ADMIN, True),
        (Role.MEMBER, Role.ADMIN, False),
        (Role.ADMIN, Role.OWNER, False),
        (Role.MEMBER, Role.MEMBER, True),
        (None, Role.MEMBER, False),
    ],
)
def test_satisfies_is_rank_comparison(role, required, expected):
    assert satisfies(role, required) is expected


def test_self_targeted_member_check_passes_for_any_member():
    assert satisfies(Role.MEMBER, Role.MEMBER, self_targeted=True)
    assert satisfies(Role.ADMIN, Role.MEMBER, self_targeted=True)
    # Not a member is never elevated
    assert not satisfies(None, Role.MEMBER, self_targeted=True)
    # Self-targeting does not lower higher requirements
    assert not satisfies(Role.MEMBER, Role.ADMIN, self_targeted=True)


def test_role_parse_is_case_insensitive():
    assert Role.parse(" Admin ") == Role.ADMIN
    with pytest.raises(ValueError):
        Role.parse("superuser")


def test_team_capabilities():
    team = _team(("owner", Role.OWNER), ("admin", Role.ADMIN), ("member", Role.MEMBER))
    assert can_manage_team(team, "owner") and can_manage_team(team, "admin")
    assert not can_manage_team(team, "member")
    assert can_invite_members(team, "admin")
    assert not can_invite_members(team, "member")
    assert can_remove_members(team, "owner")
    assert not can_remove_members(team, "outsider")


def test_can_manage_prompt_matrix():
    team = _team(("owner", Role.OWNER), ("admin", Role.ADMIN), ("writer", Role.MEMBER), ("reader", Role.MEMBER))
    prompt = Prompt(id="p1", owner_id="writer", team_id="t1")

    assert can_manage_prompt(team, "reader", prompt, "view")
    assert not can_manage_prompt(team, "outsider", prompt, "view")

    assert can_manage_prompt(team, "writer", prompt, "edit")
    assert can_manage_prompt(team, "admin", prompt, "edit")
    assert not can_manage_prompt(team, "reader", prompt, "edit")

    assert can_manage_prompt(team, "admin", prompt, "delete")
    assert can_manage_prompt(team, "owner", prompt, "delete")
    assert not can_manage_prompt(team, "writer", prompt, "delete")


def test_personal_prompt_only_manageable_by_creator():
    prompt = Prompt(id="p1", owner_id="u1")
    assert can_manage_prompt(None, "u1", prompt, "delete")
    assert not can_manage_prompt(None, "u2", prompt, "view")
