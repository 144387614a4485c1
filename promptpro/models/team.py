"""
promptpro/models/team.py

Team, membership and plan models.

Invariant: a persisted team has exactly one member with role OWNER.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from promptpro.models.identity import normalize_id, normalize_optional_id, same_identity


class Role(str, Enum):
    """Team role, ranked owner > admin > member."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, Role):
            return value
        return cls(str(value).strip().lower())


_ROLE_RANKS = {
    Role.OWNER: 2,
    Role.ADMIN: 1,
    Role.MEMBER: 0,
}

# Roles that member management may hand out
ASSIGNABLE_ROLES = frozenset({Role.ADMIN, Role.MEMBER})


class Plan(str, Enum):
    FREE = "Free"
    PRO = "Pro"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


class BillingRef(BaseModel):
    """Opaque identifiers held by the billing provider."""

    model_config = ConfigDict(frozen=True)

    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


class Membership(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role
    joined_at: Optional[datetime] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _normalize_user_id(cls, value):
        return normalize_id(value)


class Team(BaseModel):
    """
    Team document.

    `version` increments on every write and is the token for optimistic
    membership updates. `prompt_limit` is derived from `plan` (-1 = unlimited).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    plan: Plan = Plan.FREE
    prompt_limit: int
    prompt_count: int = 0
    members: List[Membership] = Field(default_factory=list)
    billing_ref: BillingRef = Field(default_factory=BillingRef)
    version: int = 0
    plan_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value):
        return normalize_id(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Team name is required")
        return value

    def member(self, user_id) -> Optional[Membership]:
        for membership in self.members:
            if same_identity(membership.user_id, user_id):
                return membership
        return None

    def owners(self) -> List[Membership]:
        return [m for m in self.members if m.role == Role.OWNER]

    @property
    def owner_id(self) -> Optional[str]:
        owners = self.owners()
        return owners[0].user_id if len(owners) == 1 else None


class TeamCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class AddMemberRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: str = Role.MEMBER.value


class UpdateRoleRequest(BaseModel):
    role: str


def billing_ref_from(customer_ref=None, subscription_ref=None) -> BillingRef:
    return BillingRef(
        customer_ref=normalize_optional_id(customer_ref),
        subscription_ref=normalize_optional_id(subscription_ref),
    )
