"""
promptpro/models/prompt.py

Prompt records and tag normalization.

A tag has no stored identity of its own: it exists only as a string inside
one or more Prompt.tags sets. Tags are compared case-insensitively and stored
lower-cased, so a set never holds two spellings of the same tag.
"""

from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from promptpro.models.identity import normalize_id, normalize_optional_id


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    TEAM = "team"
    UNLISTED = "unlisted"


def normalize_tag(tag: str) -> str:
    """Case-normalize a tag. Raises ValueError for non-strings and blanks."""
    if not isinstance(tag, str):
        raise ValueError("Tags must be strings")
    normalized = tag.strip().lower()
    if not normalized:
        raise ValueError("Tags cannot be empty")
    return normalized


def normalize_tags(tags: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(normalize_tag(tag) for tag in (tags or ()))


class Prompt(BaseModel):
    """Prompt document. TaxonomyService only ever rewrites `tags`."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    team_id: Optional[str] = None
    title: str = ""
    content: str = ""
    tags: FrozenSet[str] = Field(default_factory=frozenset)
    visibility: Visibility = Visibility.PRIVATE
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", "owner_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value):
        return normalize_id(value)

    @field_validator("team_id", mode="before")
    @classmethod
    def _normalize_team_id(cls, value):
        return normalize_optional_id(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value):
        return normalize_tags(value)

    def sorted_tags(self) -> List[str]:
        return sorted(self.tags)


class PromptCreateRequest(BaseModel):
    title: str = Field(min_length=3, max_length=100)
    content: str = Field(min_length=10)
    tags: List[str] = Field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE
    team_id: Optional[str] = None
