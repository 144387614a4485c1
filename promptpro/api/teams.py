"""
promptpro/api/teams.py
Teams API: create/delete teams, manage members.
"""

from fastapi import APIRouter, Depends

from promptpro.core.auth import get_current_user_id
from promptpro.core.errors import AppError, ConflictError, NotFoundError, PermissionError
from promptpro.features.membership.service import MembershipResult, MembershipService, MembershipStatus
from promptpro.models.team import AddMemberRequest, Team, TeamCreateRequest, UpdateRoleRequest

router = APIRouter(prefix="/v1/teams", tags=["teams"])


# Typed membership outcomes -> HTTP errors
_OUTCOME_ERRORS = {
    MembershipStatus.TEAM_NOT_FOUND: (NotFoundError, "team_not_found"),
    MembershipStatus.NOT_A_MEMBER: (NotFoundError, "not_a_member"),
    MembershipStatus.USER_NOT_FOUND: (NotFoundError, "user_not_found"),
    MembershipStatus.ALREADY_MEMBER: (ConflictError, "already_member"),
    MembershipStatus.FORBIDDEN: (PermissionError, "forbidden"),
    MembershipStatus.OWNER_INVARIANT_VIOLATION: (ConflictError, "owner_invariant_violation"),
}


def raise_for_outcome(result: MembershipResult) -> None:
    if result.ok:
        return
    error_cls, code = _OUTCOME_ERRORS.get(result.status, (AppError, "membership_error"))
    raise error_cls(result.message or result.status.value, code=code)


def team_payload(team: Team) -> dict:
    return {
        "id": team.id,
        "name": team.name,
        "description": team.description,
        "plan": team.plan.value,
        "prompt_limit": team.prompt_limit,
        "prompt_count": team.prompt_count,
        "members": [m.model_dump(mode="json") for m in team.members],
        "version": team.version,
    }


@router.post("")
async def create_team_endpoint(request: TeamCreateRequest, user_id: str = Depends(get_current_user_id)):
    """Create a team; the caller becomes its owner."""
    result = MembershipService().create_team(user_id, request.name, request.description)
    raise_for_outcome(result)
    return {"data": team_payload(result.team)}


@router.delete("/{team_id}")
async def delete_team_endpoint(team_id: str, user_id: str = Depends(get_current_user_id)):
    result = MembershipService().delete_team(team_id, user_id)
    raise_for_outcome(result)
    return {"data": {"id": team_id, "deleted": True}}


@router.get("/{team_id}/members")
async def list_members_endpoint(team_id: str, user_id: str = Depends(get_current_user_id)):
    result = MembershipService().list_members(team_id, user_id)
    raise_for_outcome(result)
    members = [m.model_dump(mode="json") for m in result.team.members]
    return {"data": members, "count": len(members)}


@router.post("/{team_id}/members")
async def add_member_endpoint(
    team_id: str, request: AddMemberRequest, user_id: str = Depends(get_current_user_id)
):
    result = MembershipService().add_member(team_id, user_id, request.email, request.role)
    raise_for_outcome(result)
    return {"data": team_payload(result.team)}


@router.patch("/{team_id}/members/{member_id}")
async def update_role_endpoint(
    team_id: str, member_id: str, request: UpdateRoleRequest, user_id: str = Depends(get_current_user_id)
):
    result = MembershipService().update_role(team_id, user_id, member_id, request.role)
    raise_for_outcome(result)
    return {"data": team_payload(result.team)}


@router.delete("/{team_id}/members/{member_id}")
async def remove_member_endpoint(team_id: str, member_id: str, user_id: str = Depends(get_current_user_id)):
    """Remove a member, or leave the team when member_id is the caller."""
    result = MembershipService().remove_member(team_id, user_id, member_id)
    raise_for_outcome(result)
    return {"data": team_payload(result.team)}
