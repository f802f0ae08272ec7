"""Shared pytest fixtures for database-backed service tests."""

from __future__ import annotations

import itertools
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gatekeeper.config import GatekeeperSettings
from gatekeeper.db.base import Base
from gatekeeper.db.models.core import Profile, Subscription, SubscriptionPlan, Tenant

FIXED_NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
_emails = itertools.count(1)


class _AsyncSessionWrapper:
    """Expose a sync Session through the AsyncSession calls the services use."""

    def __init__(self, sync_session) -> None:
        self._sync = sync_session
        self.statements: list = []

    async def execute(self, statement, *args, **kwargs):
        self.statements.append(statement)
        return self._sync.execute(statement, *args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._sync.get(*args, **kwargs)

    def add(self, obj) -> None:
        self._sync.add(obj)

    def add_all(self, objs) -> None:
        self._sync.add_all(objs)

    async def delete(self, obj) -> None:
        self._sync.delete(obj)

    async def flush(self) -> None:
        self._sync.flush()

    async def commit(self) -> None:
        self._sync.commit()

    async def rollback(self) -> None:
        self._sync.rollback()

    async def close(self) -> None:
        self._sync.close()


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sync_session = SessionLocal()
    try:
        yield _AsyncSessionWrapper(sync_session)
    finally:
        sync_session.close()
        engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> GatekeeperSettings:
    return GatekeeperSettings(_env_file=None)


async def make_tenant(session, name: str = "Acme") -> Tenant:
    tenant = Tenant(name=name)
    session.add(tenant)
    await session.flush()
    return tenant


async def make_profile(session, *, role: str = "user", tenant: Tenant | None = None, email: str | None = None) -> Profile:
    profile = Profile(
        email=email or f"{role}-{next(_emails)}@example.com",
        role=role,
        tenant_id=tenant.id if tenant else None,
    )
    session.add(profile)
    await session.flush()
    return profile


async def make_plan(session, name: str = "Pro", *, max_clients: int = 5, max_posts: int = 100) -> SubscriptionPlan:
    plan = SubscriptionPlan(name=name, max_clients=max_clients, max_posts_per_month=max_posts)
    session.add(plan)
    await session.flush()
    return plan


async def make_subscription(
    session,
    tenant: Tenant,
    plan: SubscriptionPlan | None,
    *,
    status: str = "active",
    created_at: datetime = FIXED_NOW,
) -> Subscription:
    subscription = Subscription(
        tenant_id=tenant.id,
        plan_id=plan.id if plan else None,
        status=status,
        created_at=created_at,
    )
    session.add(subscription)
    await session.flush()
    return subscription
