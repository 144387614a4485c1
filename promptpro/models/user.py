"""
promptpro/models/user.py

User identity with denormalized plan cache.

`plan` mirrors the billing state applied by plan sync; `prompt_count` is the
cached number of personal prompts the user owns.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from promptpro.models.identity import normalize_email, normalize_id
from promptpro.models.team import BillingRef, Plan


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    plan: Plan = Plan.FREE
    prompt_count: int = 0
    billing_ref: BillingRef = Field(default_factory=BillingRef)
    plan_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value):
        return normalize_id(value)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        email = normalize_email(value)
        if "@" not in email:
            raise ValueError("Email is invalid")
        return email
