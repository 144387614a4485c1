"""
promptpro/features/roles/service.py

Role resolution and capability checks.

Everything here is a pure function of the Team snapshot passed in: no store
reads, no caching. Not being a member resolves to None, which never satisfies
any requirement (it is not "lowest privilege").
"""

from enum import Enum
from typing import Optional

from promptpro.models.identity import same_identity
from promptpro.models.prompt import Prompt
from promptpro.models.team import Role, Team


class Capability(str, Enum):
    MANAGE_TEAM_SETTINGS = "manage_team_settings"
    INVITE_MEMBERS = "invite_members"
    REMOVE_MEMBERS = "remove_members"
    EDIT_ANY_PROMPT = "edit_any_prompt"
    DELETE_ANY_PROMPT = "delete_any_prompt"
    VIEW_TEAM_PROMPTS = "view_team_prompts"
    CREATE_PROMPTS = "create_prompts"
    EDIT_OWN_PROMPTS = "edit_own_prompts"


class PromptAction(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"


# Minimum role per capability
CAPABILITY_MIN_ROLE = {
    Capability.MANAGE_TEAM_SETTINGS: Role.ADMIN,
    Capability.INVITE_MEMBERS: Role.ADMIN,
    Capability.REMOVE_MEMBERS: Role.ADMIN,
    Capability.EDIT_ANY_PROMPT: Role.ADMIN,
    Capability.DELETE_ANY_PROMPT: Role.ADMIN,
    Capability.VIEW_TEAM_PROMPTS: Role.MEMBER,
    Capability.CREATE_PROMPTS: Role.MEMBER,
    Capability.EDIT_OWN_PROMPTS: Role.MEMBER,
}


def role_of(team: Optional[Team], user_id) -> Optional[Role]:
    """Return the caller's role in the team, or None if not a member."""
    if team is None or user_id is None:
        return None
    membership = team.member(user_id)
    return membership.role if membership else None


def satisfies(role: Optional[Role], required: Role, self_targeted: bool = False) -> bool:
    """
    True iff `role` is `required` or ranks above it.

    A self-targeted member-or-above check (e.g. leaving a team) passes for any
    member regardless of rank.
    """
    if role is None:
        return False
    if self_targeted and required == Role.MEMBER:
        return True
    return role.rank >= required.rank


def has_capability(team: Optional[Team], user_id, capability) -> bool:
    return satisfies(role_of(team, user_id), CAPABILITY_MIN_ROLE[Capability(capability)])


def can_manage_team(team: Optional[Team], user_id) -> bool:
    return has_capability(team, user_id, Capability.MANAGE_TEAM_SETTINGS)


def can_invite_members(team: Optional[Team], user_id) -> bool:
    return has_capability(team, user_id, Capability.INVITE_MEMBERS)


def can_remove_members(team: Optional[Team], user_id) -> bool:
    return has_capability(team, user_id, Capability.REMOVE_MEMBERS)


def can_manage_prompt(team: Optional[Team], user_id, prompt: Prompt, action) -> bool:
    """
    Prompt-level capability inside a team.

    Members view, admins/owner edit or delete anything, and a creator may
    edit (not delete) their own team prompt. Prompts without a team are only
    manageable by their creator.
    """
    action = PromptAction(action)
    is_creator = same_identity(prompt.owner_id, user_id)

    if prompt.team_id is None:
        return is_creator
    if team is None or not same_identity(team.id, prompt.team_id):
        return False
    if role_of(team, user_id) is None:
        return False

    if action == PromptAction.VIEW:
        return has_capability(team, user_id, Capability.VIEW_TEAM_PROMPTS)
    if action == PromptAction.EDIT:
        return has_capability(team, user_id, Capability.EDIT_ANY_PROMPT) or (
            is_creator and has_capability(team, user_id, Capability.EDIT_OWN_PROMPTS)
        )
    return has_capability(team, user_id, Capability.DELETE_ANY_PROMPT)
