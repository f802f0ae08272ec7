"""Presentation-independent access decisions for protected views."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel

from gatekeeper.domain.models import Identity
from gatekeeper.domain.roles import Role
from gatekeeper.i18n import I18nService
from gatekeeper.logging import get_logger

RoleResolver = Callable[[Identity], Awaitable[Role]]

log = get_logger("access_gate")


class AccessState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING = "pending"
    DENIED = "denied"
    GRANTED = "granted"


class AccessDecision(BaseModel):
    state: AccessState
    required_role: Role | None = None
    actual_role: Role | None = None
    redirect_to: str | None = None
    message: str | None = None

    @property
    def granted(self) -> bool:
        return self.state is AccessState.GRANTED


class AccessGate:
    """Four-state guard for one protected view.

    ``snapshot`` is the synchronous render-time answer and starts a role
    resolution in the background when the identity id changes. ``evaluate``
    waits for that resolution to settle. Once a role is known for the current
    identity it keeps being used while a refresh is in flight, so a view only
    shows ``PENDING`` on the first resolution for an identity.
    """

    def __init__(
        self,
        resolve: RoleResolver,
        *,
        login_path: str = "/login",
        i18n: I18nService | None = None,
        locale: str | None = None,
    ) -> None:
        self._resolve = resolve
        self.login_path = login_path
        self._i18n = i18n or I18nService()
        self._locale = locale
        self._identity_id: str | None = None
        self._role: Role | None = None
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def known_role(self) -> Role | None:
        return self._role

    def snapshot(self, identity: Identity | None, required_role: Role | str | None = None) -> AccessDecision:
        required = Role.parse(required_role) if required_role is not None else None

        if identity is None or not identity.is_authenticated:
            self._track(None)
            return AccessDecision(
                state=AccessState.UNAUTHENTICATED,
                required_role=required,
                redirect_to=self.login_path,
            )

        self._track(identity.id)
        if required is None:
            return AccessDecision(state=AccessState.GRANTED, actual_role=self._role)

        if self._role is None:
            self._start_resolution(identity)
            return AccessDecision(state=AccessState.PENDING, required_role=required)

        return self._decide(required, self._role)

    async def evaluate(
        self, identity: Identity | None, required_role: Role | str | None = None
    ) -> AccessDecision:
        decision = self.snapshot(identity, required_role)
        if decision.state is AccessState.UNAUTHENTICATED or decision.required_role is None:
            return decision

        assert identity is not None
        if self._task is None and self._role is None:
            self._start_resolution(identity)
        if self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self.snapshot(identity, required_role)

    def refresh(self, identity: Identity) -> None:
        """Re-resolve the role of ``identity`` while keeping the known role visible."""

        self._track(identity.id)
        self._start_resolution(identity, force=True)

    def close(self) -> None:
        """Detach the gate; results of in-flight resolutions are discarded."""

        self._closed = True
        self._task = None

    # Internal helpers -------------------------------------------------

    def _track(self, identity_id: str | None) -> None:
        if identity_id == self._identity_id:
            return
        self._identity_id = identity_id
        self._role = None
        self._task = None

    def _start_resolution(self, identity: Identity, *, force: bool = False) -> None:
        if self._closed:
            return
        if self._task is not None and not self._task.done() and not force:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._run(identity))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self._task = task

    async def _run(self, identity: Identity) -> None:
        try:
            role = await self._resolve(identity)
        except Exception as exc:
            log.warning("access_role_resolution_failed", identity_id=identity.id, error=str(exc))
            role = Role.USER

        if self._closed or self._identity_id != identity.id:
            log.debug("access_resolution_discarded", identity_id=identity.id)
            return
        self._role = role

    def _decide(self, required: Role, actual: Role) -> AccessDecision:
        if actual.satisfies(required):
            return AccessDecision(state=AccessState.GRANTED, required_role=required, actual_role=actual)
        log.info(
            "access_denied",
            identity_id=self._identity_id,
            required=required.label,
            actual=actual.label,
        )
        return AccessDecision(
            state=AccessState.DENIED,
            required_role=required,
            actual_role=actual,
            message=self._i18n.gettext(
                "access.denied",
                locale=self._locale,
                required=required.label,
                actual=actual.label,
            ),
        )


__all__ = ["AccessDecision", "AccessGate", "AccessState", "RoleResolver"]
