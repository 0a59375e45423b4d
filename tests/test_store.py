import pytest

from group_ordering.services.group_order import (
    GroupOrderRegistry,
    GroupOrderStatus,
    GroupOrderStore,
)
from helpers import item, join_all


@pytest.mark.asyncio
async def test_store_health(store: GroupOrderStore) -> None:
    assert await store.health_check() is True
    assert await store.load("missing") is None


@pytest.mark.asyncio
async def test_registry_writes_through(store: GroupOrderStore, settings, clock) -> None:
    registry = GroupOrderRegistry(settings=settings, store=store, clock=clock)
    session = await registry.create("rest_1", "table_7", ttl_minutes=30)

    saved = await store.load(session.id)
    assert saved["status"] == "open"
    assert saved["version"] == session.version

    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item("8.40")])

    saved = await store.load(session.id)
    assert saved["version"] == session.version
    assert saved["participants"][0]["name"] == "Ana"
    assert saved["totals"]["subtotal"] == 8.4


@pytest.mark.asyncio
async def test_stale_snapshot_never_overwrites(store: GroupOrderStore, session) -> None:
    await join_all(session, "Ana")
    older = session.snapshot()
    await join_all(session, "Ben")
    newer = session.snapshot()

    assert await store.save(newer) is True
    assert await store.save(older) is False
    assert await store.save(newer) is False

    saved = await store.load(session.id)
    assert saved["version"] == newer["version"]
    assert len(saved["participants"]) == 2


@pytest.mark.asyncio
async def test_terminal_sessions_stay_on_record(store: GroupOrderStore, settings, clock) -> None:
    registry = GroupOrderRegistry(settings=settings, store=store, clock=clock)
    session = await registry.create("rest_1", "table_7", ttl_minutes=10)
    await registry.create("rest_1", "table_8", ttl_minutes=120)

    clock.advance(minutes=10)
    await registry.sweep_expired()
    clock.advance(minutes=settings.terminal_retention_minutes)
    await registry.sweep_expired()

    assert len(registry) == 1
    saved = await store.load(session.id)
    assert saved["status"] == "expired"
    assert saved["close_reason"] == "ttl_elapsed"
    assert await store.count(GroupOrderStatus.EXPIRED) == 1
    assert await store.count() == 2
