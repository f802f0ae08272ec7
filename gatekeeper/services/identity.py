"""Identity provider contract."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from gatekeeper.domain.models import Identity


@runtime_checkable
class IdentityProvider(Protocol):
    async def get_current_identity(self) -> Identity | None:
        """Return the signed-in identity, or ``None``. Must not raise."""

    async def sign_out(self) -> None:
        ...


class InMemoryIdentityProvider:
    """Holds the current identity in memory; used for local runs and tests."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity

    async def get_current_identity(self) -> Identity | None:
        return self._identity

    def sign_in(self, identity: Identity) -> None:
        self._identity = identity

    async def sign_out(self) -> None:
        self._identity = None


__all__ = ["IdentityProvider", "InMemoryIdentityProvider"]
