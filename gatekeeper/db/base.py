"""Declarative base for SQLAlchemy models."""

from __future__ import annotations

import uuid

from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


def new_uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Declarative base with default table naming and UUID string keys."""

    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)


__all__ = ["Base", "new_uuid"]
