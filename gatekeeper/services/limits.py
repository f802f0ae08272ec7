"""Subscription limit evaluation for resource-creating actions."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.config import GatekeeperSettings, get_settings
from gatekeeper.db.models.core import Profile, SubscriptionPlan
from gatekeeper.domain.models import (
    Identity,
    LimitCheckResult,
    SubscriptionLimits,
    SubscriptionModel,
    UsageCounts,
)
from gatekeeper.i18n import I18nService
from gatekeeper.logging import logger
from gatekeeper.services.subscriptions import SubscriptionService
from gatekeeper.services.usage import UsageCounter


def format_limits_message(
    limits: SubscriptionLimits, i18n: I18nService, *, locale: str | None = None
) -> str:
    """Render "Plan: Pro • Clients: 2/5 • Posts this month: 10/150", or the error."""

    if limits.error:
        return limits.error

    parts: list[str] = []
    if limits.subscription is not None and limits.subscription.plan is not None:
        parts.append(i18n.gettext("limits.summary.plan", locale=locale, name=limits.subscription.plan.name))
    parts.append(
        i18n.gettext(
            "limits.summary.clients",
            locale=locale,
            current=limits.current_clients,
            max=limits.max_clients,
        )
    )
    parts.append(
        i18n.gettext(
            "limits.summary.posts",
            locale=locale,
            current=limits.current_posts_this_month,
            max=limits.max_posts_per_month,
        )
    )
    return " • ".join(parts)


class LimitService:
    """Combine tenant usage with the tenant's plan into allow/deny decisions.

    ``evaluate`` and its wrappers never raise; any failure yields a result
    with both permissions off and ``error`` set.
    """

    def __init__(
        self,
        session: AsyncSession,
        usage: UsageCounter,
        subscriptions: SubscriptionService,
        settings: GatekeeperSettings | None = None,
        *,
        i18n: I18nService | None = None,
        locale: str | None = None,
    ) -> None:
        self.session = session
        self.usage = usage
        self.subscriptions = subscriptions
        self.settings = settings or get_settings()
        self.i18n = i18n or I18nService(default_locale=self.settings.default_language)
        self.locale = locale

    async def evaluate(self, tenant_id: str, *, access_token: str | None = None) -> SubscriptionLimits:
        try:
            return await self._evaluate(tenant_id, access_token)
        except Exception as exc:
            logger.error("limits_evaluation_failed", tenant_id=tenant_id, error=str(exc))
            return self._blocked("limits.unavailable")

    async def evaluate_for(self, identity: Identity | None) -> SubscriptionLimits:
        if identity is None or not identity.is_authenticated:
            return self._blocked("limits.no_tenant")
        try:
            profile = await self.session.get(Profile, identity.id)
        except Exception as exc:
            logger.error("limits_profile_lookup_failed", identity_id=identity.id, error=str(exc))
            return self._blocked("limits.unavailable")
        if profile is None or not profile.tenant_id:
            logger.info("limits_without_tenant", identity_id=identity.id)
            return self._blocked("limits.no_tenant")
        return await self.evaluate(profile.tenant_id, access_token=identity.access_token)

    async def can_create_client(self, identity: Identity | None) -> LimitCheckResult:
        limits = await self.evaluate_for(identity)
        if limits.error:
            return LimitCheckResult(allowed=False, message=limits.error, limits=limits)
        if not limits.can_create_client:
            message = self._text(
                "limits.clients_reached", current=limits.current_clients, max=limits.max_clients
            )
            return LimitCheckResult(allowed=False, message=message, limits=limits)
        return LimitCheckResult(allowed=True, limits=limits)

    async def can_schedule_post(self, identity: Identity | None) -> LimitCheckResult:
        limits = await self.evaluate_for(identity)
        if limits.error:
            return LimitCheckResult(allowed=False, message=limits.error, limits=limits)
        if not limits.can_schedule_post:
            message = self._text(
                "limits.posts_reached",
                current=limits.current_posts_this_month,
                max=limits.max_posts_per_month,
            )
            return LimitCheckResult(allowed=False, message=message, limits=limits)
        return LimitCheckResult(allowed=True, limits=limits)

    def get_limits_message(self, limits: SubscriptionLimits) -> str:
        return format_limits_message(limits, self.i18n, locale=self.locale)

    # Internal helpers -------------------------------------------------

    async def _evaluate(self, tenant_id: str, access_token: str | None) -> SubscriptionLimits:
        # Usage first so callers can show real numbers whatever the plan state.
        usage = await self.usage.compute_usage(tenant_id, access_token=access_token)

        subscription = await self.subscriptions.get_active_subscription(tenant_id)
        if subscription is None:
            logger.info("limits_without_subscription", tenant_id=tenant_id)
            return self._blocked("limits.no_subscription", usage=usage)

        snapshot = SubscriptionModel.model_validate(subscription)
        plan: SubscriptionPlan | None = subscription.plan
        if plan is None:
            logger.warning("limits_plan_missing", tenant_id=tenant_id, plan_id=subscription.plan_id)
            return self._blocked("limits.plan_not_found", usage=usage, subscription=snapshot)

        quota_cfg = self.settings.quota
        if (plan.name or "").strip().lower() == quota_cfg.enterprise_plan_name:
            limits = SubscriptionLimits(
                can_create_client=True,
                can_schedule_post=True,
                current_clients=usage.clients_count,
                max_clients=quota_cfg.unlimited_sentinel,
                current_posts_this_month=usage.posts_this_month_count,
                max_posts_per_month=quota_cfg.unlimited_sentinel,
                subscription=snapshot,
            )
        else:
            max_clients = plan.max_clients or 0
            max_posts = plan.max_posts_per_month or 0
            limits = SubscriptionLimits(
                can_create_client=usage.clients_count < max_clients,
                can_schedule_post=usage.posts_this_month_count < max_posts,
                current_clients=usage.clients_count,
                max_clients=max_clients,
                current_posts_this_month=usage.posts_this_month_count,
                max_posts_per_month=max_posts,
                subscription=snapshot,
            )

        logger.info(
            "limits_evaluated",
            tenant_id=tenant_id,
            plan=plan.name,
            usage_source=usage.source,
            clients=f"{limits.current_clients}/{limits.max_clients}",
            posts=f"{limits.current_posts_this_month}/{limits.max_posts_per_month}",
        )
        return limits

    def _blocked(
        self,
        error_key: str,
        *,
        usage: UsageCounts | None = None,
        subscription: SubscriptionModel | None = None,
    ) -> SubscriptionLimits:
        usage = usage or UsageCounts()
        return SubscriptionLimits(
            current_clients=usage.clients_count,
            current_posts_this_month=usage.posts_this_month_count,
            subscription=subscription,
            error=self._text(error_key),
        )

    def _text(self, key: str, **kwargs) -> str:
        return self.i18n.gettext(key, locale=self.locale, **kwargs)


__all__ = ["LimitService", "format_limits_message"]
