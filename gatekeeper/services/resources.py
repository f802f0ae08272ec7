"""Resource-creating commands guarded by role and quota checks."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.config import GatekeeperSettings, get_settings
from gatekeeper.db.models.core import Client, Profile, ScheduledPost
from gatekeeper.domain.models import Identity
from gatekeeper.domain.roles import Role
from gatekeeper.logging import logger
from gatekeeper.services.exceptions import AccessDenied, QuotaExceeded
from gatekeeper.services.limits import LimitService
from gatekeeper.services.roles import RoleService


class ResourceService:
    def __init__(
        self,
        session: AsyncSession,
        roles: RoleService,
        limits: LimitService,
        settings: GatekeeperSettings | None = None,
    ) -> None:
        self.session = session
        self.roles = roles
        self.limits = limits
        self.settings = settings or get_settings()

    async def create_client(
        self,
        identity: Identity | None,
        *,
        name: str,
        instagram_account_id: str | None = None,
    ) -> Client:
        profile = await self._authorize(identity)
        check = await self.limits.can_create_client(identity)
        if not check.allowed:
            logger.info("client_creation_blocked", identity_id=profile.id, reason=check.message)
            raise QuotaExceeded(check.message or "Client limit reached.")

        client = Client(
            tenant_id=profile.tenant_id,
            name=name,
            instagram_account_id=instagram_account_id,
        )
        self.session.add(client)
        await self.session.flush()
        logger.info("client_created", tenant_id=profile.tenant_id, client_id=client.id)
        return client

    async def schedule_post(
        self,
        identity: Identity | None,
        *,
        client_id: str,
        scheduled_date: datetime,
        caption: str | None = None,
    ) -> ScheduledPost:
        profile = await self._authorize(identity)
        client = await self.session.get(Client, client_id)
        if client is None or client.tenant_id != profile.tenant_id:
            raise AccessDenied("Client does not belong to your organization.")

        check = await self.limits.can_schedule_post(identity)
        if not check.allowed:
            logger.info("post_scheduling_blocked", identity_id=profile.id, reason=check.message)
            raise QuotaExceeded(check.message or "Monthly post limit reached.")

        post = ScheduledPost(
            tenant_id=profile.tenant_id,
            client_id=client.id,
            caption=caption,
            scheduled_date=scheduled_date,
        )
        self.session.add(post)
        await self.session.flush()
        logger.info("post_scheduled", tenant_id=profile.tenant_id, post_id=post.id)
        return post

    async def _authorize(self, identity: Identity | None) -> Profile:
        if identity is None or not identity.is_authenticated:
            raise AccessDenied("Sign in to continue.")

        required = Role.parse(self.settings.access.resource_min_role)
        role = await self.roles.resolve_role(identity)
        if not role.satisfies(required):
            raise AccessDenied(f"Role {required.label} required, current role is {role.label}.")

        profile = await self.roles.get_profile(identity.id)
        if profile is None or not profile.tenant_id:
            raise AccessDenied(self.limits.i18n.gettext("limits.no_tenant", locale=self.limits.locale))
        return profile


__all__ = ["ResourceService"]
