"""Time-bounded cache of resolved roles."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict

from gatekeeper.domain.roles import Role
from gatekeeper.logging import logger

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RoleCacheEntry:
    role: Role
    resolved_at: float


class RoleCache:
    """Map identity ids to roles, expiring entries passively on read.

    There is no background sweep: an entry older than ``ttl_seconds`` is
    dropped the next time it is read. Every write replaces the whole entry, so
    concurrent writers for the same key simply leave the last value.
    """

    def __init__(self, ttl_seconds: float, *, clock: Clock = time.monotonic, name: str = "roles") -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[str, RoleCacheEntry] = {}

    def get(self, identity_id: str) -> Role | None:
        entry = self._entries.get(identity_id)
        if entry is None:
            return None
        if self._clock() - entry.resolved_at >= self.ttl_seconds:
            self._entries.pop(identity_id, None)
            logger.debug("role_cache_expired", cache=self.name, identity_id=identity_id)
            return None
        return entry.role

    def entry(self, identity_id: str) -> RoleCacheEntry | None:
        if self.get(identity_id) is None:
            return None
        return self._entries.get(identity_id)

    def set(self, identity_id: str, role: Role) -> RoleCacheEntry:
        entry = RoleCacheEntry(role=role, resolved_at=self._clock())
        self._entries[identity_id] = entry
        return entry

    def evict(self, identity_id: str) -> bool:
        removed = self._entries.pop(identity_id, None) is not None
        if removed:
            logger.debug("role_cache_evicted", cache=self.name, identity_id=identity_id)
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, identity_id: object) -> bool:
        return isinstance(identity_id, str) and self.get(identity_id) is not None

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["Clock", "RoleCache", "RoleCacheEntry"]
