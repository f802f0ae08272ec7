"""Subscription and plan lookups."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from gatekeeper.config import GatekeeperSettings, get_settings
from gatekeeper.db.models.core import Subscription, SubscriptionPlan
from gatekeeper.logging import logger
from gatekeeper.services.exceptions import SubscriptionLookupError

ACTIVE_STATUS = "active"


class SubscriptionService:
    def __init__(self, session: AsyncSession, settings: GatekeeperSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def get_active_subscription(self, tenant_id: str) -> Subscription | None:
        """Return the subscription that governs quotas for ``tenant_id``.

        The newest ``active`` row wins. Tenants whose rows all carry another
        status (enterprise deals set up by hand, stale billing webhooks) fall
        back to their newest row of any status. ``None`` means the tenant has
        no subscription rows at all; database failures raise
        ``SubscriptionLookupError``.
        """

        try:
            subscription = await self._latest(tenant_id, status=ACTIVE_STATUS)
            if subscription is None:
                subscription = await self._latest(tenant_id)
                if subscription is not None:
                    logger.info(
                        "subscription_status_fallback",
                        tenant_id=tenant_id,
                        subscription_id=subscription.id,
                        status=subscription.status,
                    )
            if subscription is not None and subscription.plan is None and subscription.plan_id:
                subscription.plan = await self.session.get(SubscriptionPlan, subscription.plan_id)
        except SQLAlchemyError as exc:
            raise SubscriptionLookupError(f"Subscription lookup failed: {exc}") from exc
        return subscription

    async def get_plan(self, plan_id: str) -> SubscriptionPlan | None:
        try:
            return await self.session.get(SubscriptionPlan, plan_id)
        except SQLAlchemyError as exc:
            raise SubscriptionLookupError(f"Plan lookup failed: {exc}") from exc

    async def list_plans(self, *, active_only: bool = True) -> Sequence[SubscriptionPlan]:
        stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.amount.asc())
        if active_only:
            stmt = stmt.where(SubscriptionPlan.active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars())

    # Internal helpers -------------------------------------------------

    async def _latest(self, tenant_id: str, *, status: str | None = None) -> Subscription | None:
        stmt = (
            select(Subscription)
            .options(selectinload(Subscription.plan))
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        if status is not None:
            stmt = stmt.where(Subscription.status == status)
        result = await self.session.execute(stmt)
        return result.scalars().first()


__all__ = ["ACTIVE_STATUS", "SubscriptionService"]
