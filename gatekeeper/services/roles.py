"""Role resolution and role administration."""

from __future__ import annotations

from typing import Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.config import GatekeeperSettings, get_settings
from gatekeeper.db.models.core import Profile
from gatekeeper.domain.models import Identity
from gatekeeper.domain.roles import Role
from gatekeeper.logging import logger
from gatekeeper.services.exceptions import InvalidRole, ProfileAlreadyExists, ProfileNotFound
from gatekeeper.services.role_cache import RoleCache
from gatekeeper.utils.datetime import utc_now


class RoleService:
    """Resolve roles through ``cache`` and mutate them with synchronous eviction.

    Resolution is a boundary operation and never raises: every failure
    degrades to ``Role.USER``. Mutators are explicit commands and propagate
    their errors.
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: RoleCache,
        settings: GatekeeperSettings | None = None,
        *,
        extra_caches: Iterable[RoleCache] = (),
    ) -> None:
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()
        self._caches = [cache, *(c for c in extra_caches if c is not cache)]

    async def resolve_role(self, identity: Identity | None) -> Role:
        if identity is None or not identity.is_authenticated:
            return Role.USER

        cached = self.cache.get(identity.id)
        if cached is not None:
            logger.debug("role_cache_hit", cache=self.cache.name, identity_id=identity.id)
            return cached

        try:
            stmt = select(Profile.role).where(Profile.id == identity.id)
            stored = (await self.session.execute(stmt)).scalar_one_or_none()
        except Exception as exc:
            logger.warning("role_resolution_failed", identity_id=identity.id, error=str(exc))
            return Role.USER

        if stored is None:
            logger.info("role_profile_missing", identity_id=identity.id)
            return Role.USER

        try:
            role = Role.parse(stored)
        except InvalidRole:
            # Not cached: the row is re-read once it is fixed.
            logger.warning("role_unrecognized", identity_id=identity.id, stored=stored)
            return Role.USER

        self.cache.set(identity.id, role)
        return role

    async def has_permission(self, identity: Identity | None, required: Role | str) -> bool:
        role = await self.resolve_role(identity)
        return role.satisfies(Role.parse(required))

    async def is_admin(self, identity: Identity | None) -> bool:
        return await self.has_permission(identity, Role.ADMIN)

    async def is_super_admin(self, identity: Identity | None) -> bool:
        return (await self.resolve_role(identity)) is Role.SUPER_ADMIN

    def invalidate_role_cache(self, identity_id: str) -> None:
        for cache in self._caches:
            cache.evict(identity_id)

    # Administration ---------------------------------------------------

    async def get_profile(self, user_id: str) -> Profile | None:
        return await self.session.get(Profile, user_id)

    async def update_user_role(self, user_id: str, new_role: Role | str) -> Profile:
        role = Role.parse(new_role)
        profile = await self.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {user_id} not found.")

        previous = profile.role
        profile.role = role.label
        profile.updated_at = utc_now()
        await self.session.flush()
        self.invalidate_role_cache(user_id)
        logger.info("role_updated", user_id=user_id, previous=previous, role=role.label)
        return profile

    async def create_user_with_role(
        self,
        user_id: str,
        *,
        email: str,
        role: Role | str = Role.USER,
        full_name: str | None = None,
        tenant_id: str | None = None,
    ) -> Profile:
        """Persist the profile of an identity already issued by the identity provider."""

        parsed = Role.parse(role)
        stmt = select(Profile.id).where(or_(Profile.id == user_id, Profile.email == email))
        if (await self.session.execute(stmt)).first() is not None:
            raise ProfileAlreadyExists(f"Profile for {email} already exists.")

        profile = Profile(
            id=user_id,
            email=email,
            full_name=full_name,
            role=parsed.label,
            tenant_id=tenant_id,
        )
        self.session.add(profile)
        await self.session.flush()
        self.invalidate_role_cache(user_id)
        logger.info("profile_created", user_id=user_id, role=parsed.label, tenant_id=tenant_id)
        return profile

    async def delete_user(self, user_id: str) -> None:
        profile = await self.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {user_id} not found.")
        await self.session.delete(profile)
        await self.session.flush()
        self.invalidate_role_cache(user_id)
        logger.info("profile_deleted", user_id=user_id)

    async def list_users_with_roles(self, actor: Identity | None) -> Sequence[Profile]:
        """List profiles visible to ``actor``: everyone for super admins, own tenant otherwise."""

        if actor is None:
            return []
        current = await self.get_profile(actor.id)
        if current is None:
            return []

        stmt = select(Profile).order_by(Profile.created_at.desc())
        if Role.parse_or_default(current.role) is not Role.SUPER_ADMIN:
            if not current.tenant_id:
                logger.info("list_users_without_tenant", identity_id=actor.id)
                return []
            stmt = stmt.where(Profile.tenant_id == current.tenant_id)
        result = await self.session.execute(stmt)
        return list(result.scalars())


__all__ = ["RoleService"]
