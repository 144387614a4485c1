"""
promptpro/api/prompts.py
Prompt create/delete (quota-guarded).
"""

from fastapi import APIRouter, Depends

from promptpro.core.auth import get_current_user_id
from promptpro.features.prompts.service import PromptService
from promptpro.models.prompt import Prompt, PromptCreateRequest

router = APIRouter(prefix="/v1/prompts", tags=["prompts"])


def prompt_payload(prompt: Prompt) -> dict:
    data = prompt.model_dump(mode="json")
    data["tags"] = prompt.sorted_tags()
    return data


@router.post("")
async def create_prompt_endpoint(request: PromptCreateRequest, user_id: str = Depends(get_current_user_id)):
    prompt = PromptService().create_prompt(
        user_id,
        request.title,
        request.content,
        tags=request.tags,
        visibility=request.visibility,
        team_id=request.team_id,
    )
    return {"data": prompt_payload(prompt)}


@router.delete("/{prompt_id}")
async def delete_prompt_endpoint(prompt_id: str, user_id: str = Depends(get_current_user_id)):
    PromptService().delete_prompt(prompt_id, user_id)
    return {"data": {"id": prompt_id, "deleted": True}}
