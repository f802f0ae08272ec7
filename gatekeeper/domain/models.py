"""Pydantic models shared across service and presentation layers."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

UsageSource = Literal["tenant_procedure", "global_procedure", "direct_count", "none"]


class Identity(BaseModel):
    """Authenticated user as handed over by the identity provider."""

    model_config = ConfigDict(frozen=True)

    id: str
    is_authenticated: bool = True
    email: str | None = None
    access_token: str | None = Field(default=None, repr=False)


class ProfileModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: str | None = None
    role: str = "user"
    tenant_id: str | None = None


class PlanModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    max_clients: int = 0
    max_posts_per_month: int = 0
    max_profiles: int = 0
    active: bool = True


class SubscriptionModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    plan_id: str | None = None
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    plan: PlanModel | None = None


class UsageCounts(BaseModel):
    clients_count: int = 0
    posts_this_month_count: int = 0
    source: UsageSource = "none"

    @property
    def is_empty(self) -> bool:
        return self.clients_count == 0 and self.posts_this_month_count == 0


class SubscriptionLimits(BaseModel):
    can_create_client: bool = False
    can_schedule_post: bool = False
    current_clients: int = 0
    max_clients: int = 0
    current_posts_this_month: int = 0
    max_posts_per_month: int = 0
    subscription: SubscriptionModel | None = None
    error: str | None = None


class LimitCheckResult(BaseModel):
    allowed: bool
    message: str | None = None
    limits: SubscriptionLimits | None = Field(default=None, repr=False)


__all__ = [
    "Identity",
    "LimitCheckResult",
    "PlanModel",
    "ProfileModel",
    "SubscriptionLimits",
    "SubscriptionModel",
    "UsageCounts",
    "UsageSource",
]
