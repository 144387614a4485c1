"""
promptpro/api/quota.py
Quota headroom for UI display (usage counters, upgrade prompts).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from promptpro.core.auth import get_current_user_id
from promptpro.core.errors import NotFoundError, PermissionError
from promptpro.core.store import get_store
from promptpro.features.quota.service import QuotaGuard
from promptpro.features.roles.service import role_of
from promptpro.models.scope import QuotaScope

router = APIRouter(prefix="/v1/quota", tags=["quota"])


@router.get("")
async def quota_headroom_endpoint(
    team_id: Optional[str] = Query(None, description="Team scope; personal quota when omitted"),
    user_id: str = Depends(get_current_user_id),
):
    if team_id:
        team = get_store().get_team(team_id)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found", code="team_not_found")
        if role_of(team, user_id) is None:
            raise PermissionError("Only team members can view team quota")
        scope = QuotaScope.team(team.id)
    else:
        scope = QuotaScope.personal(user_id)

    return {"data": QuotaGuard().headroom(scope)}
