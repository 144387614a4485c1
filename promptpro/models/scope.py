"""
promptpro/models/scope.py

Explicit scopes passed to every taxonomy and quota call.

There is no ambient "current team": callers name the scope they act in.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from promptpro.models.identity import normalize_optional_id, same_identity
from promptpro.models.prompt import Prompt


class ScopeKind(str, Enum):
    GLOBAL = "global"
    OWNER = "owner"
    TEAM = "team"


class TaxonomyScope(BaseModel):
    """Which prompts a taxonomy operation may touch."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    subject_id: Optional[str] = None

    @field_validator("subject_id", mode="before")
    @classmethod
    def _normalize_subject(cls, value):
        return normalize_optional_id(value)

    @model_validator(mode="after")
    def _check_subject(self):
        if self.kind == ScopeKind.GLOBAL and self.subject_id is not None:
            raise ValueError("global scope takes no subject_id")
        if self.kind != ScopeKind.GLOBAL and self.subject_id is None:
            raise ValueError(f"{self.kind.value} scope requires subject_id")
        return self

    @classmethod
    def global_scope(cls) -> "TaxonomyScope":
        return cls(kind=ScopeKind.GLOBAL)

    @classmethod
    def for_owner(cls, owner_id) -> "TaxonomyScope":
        return cls(kind=ScopeKind.OWNER, subject_id=owner_id)

    @classmethod
    def for_team(cls, team_id) -> "TaxonomyScope":
        return cls(kind=ScopeKind.TEAM, subject_id=team_id)

    def contains(self, prompt: Prompt) -> bool:
        if self.kind == ScopeKind.GLOBAL:
            return True
        if self.kind == ScopeKind.OWNER:
            return same_identity(prompt.owner_id, self.subject_id)
        return same_identity(prompt.team_id, self.subject_id)

    def describe(self) -> str:
        if self.kind == ScopeKind.GLOBAL:
            return "global"
        return f"{self.kind.value}:{self.subject_id}"


class QuotaScopeKind(str, Enum):
    PERSONAL = "personal"
    TEAM = "team"


class QuotaScope(BaseModel):
    """Whose prompt counter a create is charged to."""

    model_config = ConfigDict(frozen=True)

    kind: QuotaScopeKind
    subject_id: str

    @field_validator("subject_id", mode="before")
    @classmethod
    def _normalize_subject(cls, value):
        normalized = normalize_optional_id(value)
        if normalized is None:
            raise ValueError("quota scope requires subject_id")
        return normalized

    @classmethod
    def personal(cls, user_id) -> "QuotaScope":
        return cls(kind=QuotaScopeKind.PERSONAL, subject_id=user_id)

    @classmethod
    def team(cls, team_id) -> "QuotaScope":
        return cls(kind=QuotaScopeKind.TEAM, subject_id=team_id)

    @property
    def target_type(self) -> str:
        return "user" if self.kind == QuotaScopeKind.PERSONAL else "team"
