"""Startup seed helpers."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.config import GatekeeperSettings
from gatekeeper.db.models.core import SubscriptionPlan
from gatekeeper.utils.datetime import utc_now

DEFAULT_PLANS = (
    {
        "name": "Basic",
        "amount": 4900,
        "max_profiles": 1,
        "max_clients": 1,
        "max_posts_per_month": 10,
    },
    {
        "name": "Pro",
        "amount": 9900,
        "max_profiles": 3,
        "max_clients": 5,
        "max_posts_per_month": 150,
    },
    {
        "name": "Agency",
        "amount": 24900,
        "max_profiles": 10,
        "max_clients": 20,
        "max_posts_per_month": 1000,
    },
)


async def ensure_subscription_plans(session: AsyncSession, settings: GatekeeperSettings) -> None:
    """Ensure the default plans and the enterprise plan exist and stay in sync."""

    enterprise = {
        # Stored limits are ignored for this plan; see LimitService.
        "name": settings.quota.enterprise_plan_name.capitalize(),
        "amount": 0,
        "max_profiles": 0,
        "max_clients": 0,
        "max_posts_per_month": 0,
    }

    for payload in (*DEFAULT_PLANS, enterprise):
        stmt = select(SubscriptionPlan).where(SubscriptionPlan.name == payload["name"])
        result = await session.execute(stmt)
        plan = result.scalar_one_or_none()
        now = utc_now()
        if plan:
            plan.amount = payload["amount"]
            plan.max_profiles = payload["max_profiles"]
            plan.max_clients = payload["max_clients"]
            plan.max_posts_per_month = payload["max_posts_per_month"]
            plan.active = True
            plan.updated_at = now
        else:
            session.add(
                SubscriptionPlan(
                    name=payload["name"],
                    amount=payload["amount"],
                    max_profiles=payload["max_profiles"],
                    max_clients=payload["max_clients"],
                    max_posts_per_month=payload["max_posts_per_month"],
                    active=True,
                    created_at=now,
                    updated_at=now,
                )
            )

    await session.flush()


__all__ = ["DEFAULT_PLANS", "ensure_subscription_plans"]
