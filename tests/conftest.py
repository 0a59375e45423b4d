"""Shared fixtures: a controllable clock, an in-memory registry and an API client."""

import os

# Must be set before group_ordering reads its settings
os.environ.setdefault("ENV_MODE", "development")
os.environ["PERSIST_GROUP_ORDERS"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from group_ordering.core.config import Settings, get_settings
from group_ordering.database import init_db
from group_ordering.services.group_order import (
    GroupOrderRegistry,
    GroupOrderSession,
    GroupOrderSettings,
    GroupOrderStore,
    get_registry,
)
from group_ordering.services.payment import MockPaymentService, get_payment_service


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 14, 19, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(update={"persist_group_orders": False})


@pytest.fixture
def registry(settings: Settings, clock: FakeClock) -> GroupOrderRegistry:
    return GroupOrderRegistry(settings=settings, clock=clock)


@pytest.fixture
def payment_service() -> MockPaymentService:
    return MockPaymentService(failure_rate=0.0, min_latency=0.0, max_latency=0.0)


@pytest.fixture
async def session(registry: GroupOrderRegistry) -> GroupOrderSession:
    return await registry.create(
        "rest_1", "table_7", ttl_minutes=60,
        settings=GroupOrderSettings(max_participants=4),
    )


@pytest.fixture
async def store(tmp_path) -> AsyncIterator[GroupOrderStore]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'group_orders.db'}")
    await init_db(engine)
    yield GroupOrderStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
async def client(
    registry: GroupOrderRegistry,
    payment_service: MockPaymentService,
) -> AsyncIterator[httpx.AsyncClient]:
    from group_ordering.main import app

    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_payment_service] = lambda: payment_service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
