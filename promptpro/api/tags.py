"""
promptpro/api/tags.py
Tag taxonomy API: list, rename, merge, delete.

Every call names its scope:
- owner (default): the caller's own prompts
- team: prompts of one team (list: any member, changes: owner/admin)
- global: every prompt (platform admins only)
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from promptpro.core.auth import get_current_user_id
from promptpro.core.config import settings, split_csv
from promptpro.core.errors import NotFoundError, PermissionError, ValidationError
from promptpro.core.store import get_store
from promptpro.features.roles.service import role_of, satisfies
from promptpro.features.taxonomy.service import TaxonomyResult, TaxonomyService, TaxonomyStatus
from promptpro.models.identity import same_identity
from promptpro.models.scope import ScopeKind, TaxonomyScope
from promptpro.models.team import Role

router = APIRouter(prefix="/v1/tags", tags=["tags"])


class RenameTagRequest(BaseModel):
    old_tag: str = Field(min_length=1)
    new_tag: str = Field(min_length=1)


class MergeTagsRequest(BaseModel):
    source_tags: List[str] = Field(min_length=1)
    target_tag: str = Field(min_length=1)


def _platform_admin(user_id: str) -> bool:
    return any(same_identity(admin, user_id) for admin in split_csv(settings.ADMIN_USER_IDS))


def resolve_scope(user_id: str, scope: str, team_id: Optional[str], mutating: bool) -> TaxonomyScope:
    try:
        kind = ScopeKind(scope)
    except ValueError:
        raise ValidationError(f"Unknown scope: {scope}")

    if kind == ScopeKind.OWNER:
        return TaxonomyScope.for_owner(user_id)

    if kind == ScopeKind.GLOBAL:
        if mutating and not _platform_admin(user_id):
            raise PermissionError("Global tag changes require platform admin access")
        return TaxonomyScope.global_scope()

    if not team_id:
        raise ValidationError("team_id is required for team scope")
    team = get_store().get_team(team_id)
    if team is None:
        raise NotFoundError(f"Team {team_id} not found", code="team_not_found")
    required = Role.ADMIN if mutating else Role.MEMBER
    if not satisfies(role_of(team, user_id), required):
        raise PermissionError("Insufficient team role for this tag operation")
    return TaxonomyScope.for_team(team.id)


def _result_response(result: TaxonomyResult) -> dict:
    if result.status == TaxonomyStatus.INVALID_MERGE:
        raise ValidationError(result.message, code="invalid_merge")
    # partial_failure is reported in-band so callers can retry failed_ids
    return {"data": result.to_dict()}


@router.get("")
def list_tags_endpoint(
    scope: str = Query("owner"),
    team_id: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    tags = TaxonomyService().list_tags(resolve_scope(user_id, scope, team_id, mutating=False))
    return {"data": tags, "count": len(tags)}


@router.post("/rename")
def rename_tag_endpoint(
    request: RenameTagRequest,
    scope: str = Query("owner"),
    team_id: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    taxonomy_scope = resolve_scope(user_id, scope, team_id, mutating=True)
    result = TaxonomyService().rename(request.old_tag, request.new_tag, taxonomy_scope, actor_id=user_id)
    return _result_response(result)


@router.post("/merge")
def merge_tags_endpoint(
    request: MergeTagsRequest,
    scope: str = Query("owner"),
    team_id: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    taxonomy_scope = resolve_scope(user_id, scope, team_id, mutating=True)
    result = TaxonomyService().merge(request.source_tags, request.target_tag, taxonomy_scope, actor_id=user_id)
    return _result_response(result)


@router.delete("/{tag}")
def delete_tag_endpoint(
    tag: str,
    scope: str = Query("owner"),
    team_id: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    taxonomy_scope = resolve_scope(user_id, scope, team_id, mutating=True)
    result = TaxonomyService().delete(tag, taxonomy_scope, actor_id=user_id)
    return _result_response(result)
