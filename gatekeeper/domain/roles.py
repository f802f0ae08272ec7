"""Closed role hierarchy."""

from __future__ import annotations

from enum import IntEnum

from gatekeeper.services.exceptions import InvalidRole


class Role(IntEnum):
    """User roles ordered by privilege; a higher rank includes every lower one."""

    USER = 1
    MODERATOR = 2
    ADMIN = 3
    SUPER_ADMIN = 4

    @property
    def label(self) -> str:
        """The literal stored in the profile table and shown to users."""

        return self.name.lower()

    def __str__(self) -> str:
        return self.label

    def satisfies(self, required: "Role") -> bool:
        return self >= required

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        raise InvalidRole(f"Unknown role: {value!r}")

    @classmethod
    def parse_or_default(cls, value: "Role | str | None", default: "Role | None" = None) -> "Role":
        """Parse ``value``, falling back to ``default`` (least privilege) when invalid."""

        try:
            return cls.parse(value)  # type: ignore[arg-type]
        except InvalidRole:
            return default if default is not None else cls.USER


__all__ = ["Role"]
