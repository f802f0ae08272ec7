"""Composition root wiring caches, services and collaborators."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.config import GatekeeperSettings, get_settings
from gatekeeper.db.session import Database
from gatekeeper.domain.models import Identity, LimitCheckResult, SubscriptionLimits
from gatekeeper.domain.roles import Role
from gatekeeper.i18n import I18nService
from gatekeeper.logging import logger
from gatekeeper.services.access_gate import AccessGate
from gatekeeper.services.identity import IdentityProvider, InMemoryIdentityProvider
from gatekeeper.services.limits import LimitService, format_limits_message
from gatekeeper.services.resources import ResourceService
from gatekeeper.services.role_cache import Clock, RoleCache
from gatekeeper.services.roles import RoleService
from gatekeeper.services.subscriptions import SubscriptionService
from gatekeeper.services.usage import ProcedureClient, UsageCounter


class AccessContainer:
    """Own the role caches for the application lifetime and expose the checks.

    Every public call opens its own database session. Calls taking an
    optional ``identity`` fall back to the identity provider's current one.
    """

    def __init__(
        self,
        settings: GatekeeperSettings | None = None,
        *,
        database: Database | None = None,
        identity_provider: IdentityProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.database = database or Database(self.settings)
        self.identity_provider = identity_provider or InMemoryIdentityProvider()
        self.i18n = I18nService(default_locale=self.settings.default_language)

        cache_cfg = self.settings.role_cache
        self.ui_role_cache = RoleCache(cache_cfg.ui_ttl_seconds, clock=clock, name="ui")
        self.service_role_cache = RoleCache(cache_cfg.service_ttl_seconds, clock=clock, name="service")

        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.procedures: ProcedureClient | None = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        if self.settings.procedures.base_url is not None:
            if self._http_client is None:
                self._http_client = httpx.AsyncClient()
            self.procedures = ProcedureClient(self._http_client, self.settings.procedures)
        self._started = True
        logger.info(
            "access_container_started",
            procedures_enabled=self.procedures is not None,
            ui_ttl=self.ui_role_cache.ttl_seconds,
            service_ttl=self.service_role_cache.ttl_seconds,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self.ui_role_cache.clear()
        self.service_role_cache.clear()
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
        self.procedures = None
        await self.database.dispose()
        self._started = False
        logger.info("access_container_stopped")

    async def __aenter__(self) -> "AccessContainer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Service factories ------------------------------------------------

    def role_service(self, session: AsyncSession, *, ui: bool = False) -> RoleService:
        primary, other = (
            (self.ui_role_cache, self.service_role_cache)
            if ui
            else (self.service_role_cache, self.ui_role_cache)
        )
        return RoleService(session, primary, self.settings, extra_caches=(other,))

    def limit_service(self, session: AsyncSession, *, locale: str | None = None) -> LimitService:
        usage = UsageCounter(session, self.procedures, self.settings)
        return LimitService(
            session,
            usage,
            SubscriptionService(session, self.settings),
            self.settings,
            i18n=self.i18n,
            locale=locale,
        )

    def resource_service(self, session: AsyncSession) -> ResourceService:
        return ResourceService(
            session, self.role_service(session), self.limit_service(session), self.settings
        )

    def create_gate(self, *, locale: str | None = None) -> AccessGate:
        async def _resolve(identity: Identity) -> Role:
            return await self._resolve(identity, ui=True)

        return AccessGate(
            _resolve,
            login_path=self.settings.access.login_path,
            i18n=self.i18n,
            locale=locale,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.database.session() as session:
            yield session

    # Exposed checks ---------------------------------------------------

    async def current_identity(self) -> Identity | None:
        return await self.identity_provider.get_current_identity()

    async def resolve_role(self, identity: Identity | None = None) -> Role:
        identity = identity or await self.current_identity()
        return await self._resolve(identity, ui=False)

    async def is_admin(self, identity: Identity | None = None) -> bool:
        return (await self.resolve_role(identity)).satisfies(Role.ADMIN)

    async def is_super_admin(self, identity: Identity | None = None) -> bool:
        return (await self.resolve_role(identity)) is Role.SUPER_ADMIN

    def invalidate_role_cache(self, identity_id: str) -> None:
        self.ui_role_cache.evict(identity_id)
        self.service_role_cache.evict(identity_id)

    async def update_user_role(self, user_id: str, new_role: Role | str) -> None:
        async with self.session() as session:
            await self.role_service(session).update_user_role(user_id, new_role)
        # Evict again after commit so no resolution in between re-cached the old row.
        self.invalidate_role_cache(user_id)

    async def sign_out(self) -> None:
        identity = await self.current_identity()
        await self.identity_provider.sign_out()
        if identity is not None:
            self.invalidate_role_cache(identity.id)

    async def evaluate_limits(
        self, identity: Identity | None = None, *, locale: str | None = None
    ) -> SubscriptionLimits:
        identity = identity or await self.current_identity()
        try:
            async with self.session() as session:
                return await self.limit_service(session, locale=locale).evaluate_for(identity)
        except Exception as exc:
            logger.error("limits_session_failed", error=str(exc))
            return SubscriptionLimits(error=self.i18n.gettext("limits.unavailable", locale=locale))

    async def can_create_client(
        self, identity: Identity | None = None, *, locale: str | None = None
    ) -> LimitCheckResult:
        identity = identity or await self.current_identity()
        return await self._check(identity, locale, LimitService.can_create_client)

    async def can_schedule_post(
        self, identity: Identity | None = None, *, locale: str | None = None
    ) -> LimitCheckResult:
        identity = identity or await self.current_identity()
        return await self._check(identity, locale, LimitService.can_schedule_post)

    def get_limits_message(self, limits: SubscriptionLimits, *, locale: str | None = None) -> str:
        return format_limits_message(limits, self.i18n, locale=locale)

    # Internal helpers -------------------------------------------------

    async def _resolve(self, identity: Identity | None, *, ui: bool) -> Role:
        if identity is None:
            return Role.USER
        try:
            async with self.session() as session:
                return await self.role_service(session, ui=ui).resolve_role(identity)
        except Exception as exc:
            logger.warning("role_session_failed", identity_id=identity.id, error=str(exc))
            return Role.USER

    async def _check(
        self,
        identity: Identity | None,
        locale: str | None,
        check: Callable[[LimitService, Identity | None], Awaitable[LimitCheckResult]],
    ) -> LimitCheckResult:
        try:
            async with self.session() as session:
                return await check(self.limit_service(session, locale=locale), identity)
        except Exception as exc:
            logger.error("limits_session_failed", error=str(exc))
            message = self.i18n.gettext("limits.unavailable", locale=locale)
            return LimitCheckResult(
                allowed=False, message=message, limits=SubscriptionLimits(error=message)
            )


__all__ = ["AccessContainer"]
