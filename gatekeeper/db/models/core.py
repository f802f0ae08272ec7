"""SQLAlchemy models for the tables the access and quota checks read."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gatekeeper.db.base import Base
from gatekeeper.utils.datetime import utc_now


class Tenant(Base):
    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(191), nullable=False)
    email: Mapped[str | None] = mapped_column(String(191))
    country: Mapped[str] = mapped_column(String(2), default="BR")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    profiles: Mapped[list["Profile"]] = relationship(back_populates="tenant")
    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="tenant")


class Profile(Base):
    """Application profile keyed by the identity provider's user id."""

    __tablename__ = "profiles"
    __table_args__ = (UniqueConstraint("email", name="uq_profiles_email"),)

    email: Mapped[str] = mapped_column(String(191), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(191))
    # Stored as free text; parsed into ``Role`` on read.
    role: Mapped[str] = mapped_column(String(32), default="user", nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(
        ForeignKey("tenants.id", ondelete="SET NULL"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    tenant: Mapped[Tenant | None] = relationship(back_populates="profiles")


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (UniqueConstraint("name", name="uq_subscription_plans_name"),)

    name: Mapped[str] = mapped_column(String(64), nullable=False)
    stripe_price_id: Mapped[str | None] = mapped_column(String(128))
    amount: Mapped[int] = mapped_column(Integer, default=0)  # in cents
    currency: Mapped[str] = mapped_column(String(3), default="brl")
    interval: Mapped[str] = mapped_column(String(8), default="month")
    max_profiles: Mapped[int] = mapped_column(Integer, default=1)
    max_clients: Mapped[int] = mapped_column(Integer, default=0)
    max_posts_per_month: Mapped[int] = mapped_column(Integer, default=0)
    features: Mapped[dict | None] = mapped_column(JSON)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="plan")


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_tenant_created", "tenant_id", "created_at"),)

    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    plan_id: Mapped[str | None] = mapped_column(ForeignKey("subscription_plans.id"))
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(128))
    # active, canceled, past_due, trialing, ... as reported by the billing provider
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    tenant: Mapped[Tenant] = relationship(back_populates="subscriptions")
    plan: Mapped[SubscriptionPlan | None] = relationship(back_populates="subscriptions")


class Client(Base):
    """A managed social account owned by a tenant."""

    __tablename__ = "clients"

    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(191), nullable=False)
    instagram_account_id: Mapped[str | None] = mapped_column(String(64))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ScheduledPost(Base):
    __tablename__ = "scheduled_posts"
    __table_args__ = (
        Index("ix_scheduled_posts_tenant_date", "tenant_id", "scheduled_date"),
    )

    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"))
    caption: Mapped[str | None] = mapped_column(Text)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    # Legacy rows exempt from monthly quota accounting.
    grandfathered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


__all__ = [
    "Client",
    "Profile",
    "ScheduledPost",
    "Subscription",
    "SubscriptionPlan",
    "Tenant",
]
