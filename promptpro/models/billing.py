"""
promptpro/models/billing.py

Plan-change events delivered by the billing provider.

Delivery is at-least-once and unordered: `event_id` deduplicates and
`occurred_at` orders.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from promptpro.models.identity import normalize_optional_id
from promptpro.models.team import Plan


class PlanChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str = "plan.changed"
    team_id: Optional[str] = None
    user_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    new_plan: Plan
    occurred_at: datetime
    reason: Optional[str] = None

    @field_validator("team_id", "user_id", "subscription_ref", "customer_ref", mode="before")
    @classmethod
    def _normalize_refs(cls, value):
        return normalize_optional_id(value)

    @field_validator("occurred_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _require_target(self):
        if not (self.team_id or self.user_id or self.subscription_ref):
            raise ValueError("plan change needs team_id, user_id or subscription_ref")
        return self
