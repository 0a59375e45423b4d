import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from group_ordering.core.exceptions import (
    CapacityExceeded,
    InvalidRequest,
    InvalidSplit,
    LeaderRequired,
    LimitExceeded,
    NotFound,
    SessionClosed,
)
from group_ordering.services.group_order import (
    CheckoutCoordinator,
    GroupOrderSession,
    GroupOrderSettings,
    GroupOrderStatus,
    ParticipantIdentity,
    PaymentStatus,
)
from helpers import item, join_all


def new_session(clock, max_participants: int = 4, on_commit=None) -> GroupOrderSession:
    session = GroupOrderSession(
        restaurant_id="rest_1",
        table_id="table_7",
        invite_code="K7QM3XPA",
        expires_at=clock() + timedelta(minutes=30),
        settings=GroupOrderSettings(max_participants=max_participants),
        clock=clock,
        on_commit=on_commit,
    )
    session.open()
    return session


@pytest.mark.asyncio
async def test_lifecycle_to_locked(clock) -> None:
    session = new_session(clock)
    assert session.status == GroupOrderStatus.OPEN

    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item(12)])
    await session.lock()

    assert session.status == GroupOrderStatus.LOCKED
    with pytest.raises(SessionClosed):
        await session.join(ParticipantIdentity("Late"))
    with pytest.raises(SessionClosed):
        await session.add_items(ana, [item(3)])
    with pytest.raises(SessionClosed):
        await session.set_spending_limits(True, 10)


@pytest.mark.asyncio
async def test_cancel_is_terminal(clock) -> None:
    session = new_session(clock)
    await session.cancel("host left")

    assert session.status == GroupOrderStatus.CANCELLED
    assert session.close_reason == "host left"
    assert session.closed_at == clock()
    with pytest.raises(SessionClosed):
        await session.cancel()
    with pytest.raises(SessionClosed):
        await session.set_payment_structure("equal_split")


@pytest.mark.asyncio
async def test_operation_after_ttl_sees_session_closed(clock) -> None:
    session = new_session(clock)
    (ana,) = await join_all(session, "Ana")

    clock.advance(minutes=30)
    with pytest.raises(SessionClosed):
        await session.add_items(ana, [item(5)])

    assert session.status == GroupOrderStatus.EXPIRED
    assert session.ledger.get(ana).items == []
    assert not session.can_resolve()


@pytest.mark.asyncio
async def test_refresh_expires_once(clock) -> None:
    session = new_session(clock)
    assert await session.refresh() is False

    clock.advance(hours=1)
    assert await session.refresh() is True
    assert await session.refresh() is False
    assert session.status == GroupOrderStatus.EXPIRED


@pytest.mark.asyncio
@pytest.mark.parametrize("capacity,attempts", ((5, 12), (3, 3), (8, 5), (1, 20)))
async def test_concurrent_joins_never_exceed_capacity(clock, capacity: int, attempts: int) -> None:
    session = new_session(clock, max_participants=capacity)

    results = await asyncio.gather(
        *(session.join(ParticipantIdentity(f"Diner {i}")) for i in range(attempts)),
        return_exceptions=True,
    )

    admitted = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, BaseException)]
    assert len(session.ledger) == len(admitted) == min(capacity, attempts)
    assert all(isinstance(r, CapacityExceeded) for r in rejected)


@pytest.mark.asyncio
async def test_concurrent_additions_never_exceed_limit(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    await session.set_spending_limits(True, 25, {ben: 40})

    results = await asyncio.gather(
        *(session.add_items(pid, [item("4.00")]) for pid in (ana, ben) for _ in range(15)),
        return_exceptions=True,
    )

    assert all(isinstance(r, LimitExceeded) for r in results if isinstance(r, BaseException))
    assert session.ledger.get(ana).spent_amount == Decimal("24.00")
    assert session.ledger.get(ben).spent_amount == Decimal("40.00")


@pytest.mark.asyncio
async def test_limit_scenario(clock) -> None:
    session = new_session(clock)
    (ana,) = await join_all(session, "Ana")
    await session.set_spending_limits(True, "25.00")

    with pytest.raises(LimitExceeded):
        await session.add_items(ana, [item(30)])
    assert session.ledger.get(ana).spent_amount == Decimal("0.00")

    participant = await session.add_items(ana, [item(20)])
    assert participant.spent_amount == Decimal("20.00")


@pytest.mark.asyncio
async def test_multi_item_addition_is_all_or_nothing(clock) -> None:
    session = new_session(clock)
    (ana,) = await join_all(session, "Ana")
    await session.set_spending_limits(True, 10)

    with pytest.raises(LimitExceeded):
        await session.add_items(ana, [item(6), item(6)])
    assert session.ledger.get(ana).items == []


@pytest.mark.asyncio
async def test_lowered_limit_keeps_existing_items(clock) -> None:
    session = new_session(clock)
    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item(18)])

    await session.set_spending_limits(True, 10)
    assert session.ledger.get(ana).spent_amount == Decimal("18.00")
    with pytest.raises(LimitExceeded):
        await session.add_items(ana, [item("0.01")])

    status = session.snapshot()["participants"][0]["spending"]
    assert status["status"] == "exceeded_limit"


@pytest.mark.asyncio
async def test_limits_for_unknown_participant_rejected(clock) -> None:
    session = new_session(clock)
    with pytest.raises(InvalidRequest):
        await session.set_spending_limits(True, 10, {"ghost": 5})


@pytest.mark.asyncio
async def test_add_items_for_unknown_participant(clock) -> None:
    session = new_session(clock)
    with pytest.raises(NotFound):
        await session.add_items("ghost", [item(1)])


@pytest.mark.asyncio
async def test_equal_split_recomputed_after_join(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    await session.add_items(ana, [item(9)])
    await session.set_payment_structure("equal_split")
    assert session.settlement() == {ana: Decimal("4.50"), ben: Decimal("4.50")}

    (cy,) = await join_all(session, "Cy")
    assert session.settlement() == {ana: Decimal("3.00"), ben: Decimal("3.00"), cy: Decimal("3.00")}


@pytest.mark.asyncio
async def test_lock_rejects_stale_custom_split(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    await session.set_payment_structure("custom", {ana: 60, ben: 40})
    await join_all(session, "Cy")

    with pytest.raises(InvalidSplit):
        await session.lock()
    assert session.status == GroupOrderStatus.OPEN


@pytest.mark.asyncio
async def test_leaving_payer_falls_back_to_first_joiner(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    await session.add_items(ana, [item(10)])
    await session.set_payment_structure("pay_all", payer_id=ben)
    assert session.settlement()[ben] == Decimal("10.00")

    await session.leave(ben)
    assert session.payment_plan.payer_id is None
    assert session.settlement() == {ana: Decimal("10.00")}


@pytest.mark.asyncio
async def test_every_commit_publishes_a_newer_snapshot(clock) -> None:
    published = []

    async def on_commit(snapshot: dict) -> None:
        published.append(snapshot)

    session = new_session(clock, on_commit=on_commit)
    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item(7)])
    with pytest.raises(LimitExceeded):
        await session.set_spending_limits(True, 5)
        await session.add_items(ana, [item(7)])

    versions = [snapshot["version"] for snapshot in published]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)
    assert published[-1]["version"] == session.version
    assert published[-1]["participants"][0]["spent_amount"] == 7.0


@pytest.mark.asyncio
async def test_snapshot_shape(clock) -> None:
    session = new_session(clock)
    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item("4.50", quantity=2)])

    got = session.snapshot()
    assert got["status"] == "open"
    assert got["payment_structure"] == "pay_own"
    assert got["totals"] == {"subtotal": 9.0, "item_count": 2, "participant_count": 1}
    assert got["settlement"] == {ana: 9.0}
    assert got["participants"][0]["items"][0]["total"] == 9.0


@pytest.mark.asyncio
async def test_locked_session_rejects_settings_changes(clock) -> None:
    session = new_session(clock)
    _, ben = await join_all(session, "Ana", "Ben")
    await session.lock()

    with pytest.raises(SessionClosed):
        await session.set_payment_structure("equal_split")
    with pytest.raises(SessionClosed):
        await session.set_participant_limit(ben, 5)
    with pytest.raises(SessionClosed):
        await session.leave(ben)
    assert session.payment_plan.structure.value == "pay_own"


@pytest.mark.asyncio
async def test_finalized_session_rejects_everything(clock, payment_service) -> None:
    session = new_session(clock)
    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item(10)])
    assert (await CheckoutCoordinator(payment_service).checkout(session)).finalized
    version = session.version

    with pytest.raises(SessionClosed):
        await session.join(ParticipantIdentity("Late", "late@example.com"))
    with pytest.raises(SessionClosed):
        await session.add_items(ana, [item(3)])
    with pytest.raises(SessionClosed):
        await session.set_spending_limits(True, 10)
    with pytest.raises(SessionClosed):
        await session.set_payment_structure("equal_split")
    with pytest.raises(SessionClosed):
        await session.cancel()
    with pytest.raises(SessionClosed):
        await session.lock()

    assert session.status == GroupOrderStatus.FINALIZED
    assert session.version == version


@pytest.mark.asyncio
async def test_first_joiner_leads(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    assert session.leader_id == ana

    attempts = (
        lambda: session.lock(actor_id=ben),
        lambda: session.cancel(actor_id=ben),
        lambda: session.set_spending_limits(True, 5, actor_id=ben),
        lambda: session.set_participant_limit(ana, 5, actor_id=ben),
        lambda: session.set_payment_structure("pay_all", actor_id=ben),
        lambda: session.begin_checkout(actor_id=ben),
    )
    for attempt in attempts:
        with pytest.raises(LeaderRequired):
            await attempt()

    assert session.status == GroupOrderStatus.OPEN
    assert not session.spending_limits.enabled
    assert not session.checkout_in_progress

    with pytest.raises(NotFound):
        await session.lock(actor_id="stranger")

    await session.set_payment_structure("pay_all", actor_id=ana)
    await session.lock(actor_id=ana)
    assert session.status == GroupOrderStatus.LOCKED


@pytest.mark.asyncio
async def test_leadership_passes_to_earliest_remaining_joiner(clock) -> None:
    session = new_session(clock)
    ana, ben, cy = await join_all(session, "Ana", "Ben", "Cy")

    await session.leave(ben)
    assert session.leader_id == ana
    await session.leave(ana)
    assert session.leader_id == cy
    await session.leave(cy)
    assert session.leader_id is None

    (dee,) = await join_all(session, "Dee")
    assert session.leader_id == dee
    assert session.snapshot()["participants"][0]["is_leader"] is True


@pytest.mark.asyncio
async def test_update_participant(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")

    updated = await session.update_participant(ana, name="Ana Maria", payment_method_id="pm_card_visa")
    assert updated.name == "Ana Maria"
    assert updated.email == "ana@example.com"
    assert updated.payment_method_id == "pm_card_visa"

    with pytest.raises(InvalidRequest) as excinfo:
        await session.update_participant(ben, email="Ana@Example.com")
    assert excinfo.value.status_code == 409
    assert session.ledger.get(ben).email == "ben@example.com"

    with pytest.raises(NotFound):
        await session.update_participant("stranger", name="Nobody")


@pytest.mark.asyncio
async def test_participant_limit_override(clock) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    await session.set_spending_limits(True, 20)

    limits = await session.set_participant_limit(ben, 5, actor_id=ana)
    assert limits.participant_limits == {ben: Decimal("5.00")}
    assert limits.default_limit == Decimal("20.00")
    with pytest.raises(LimitExceeded):
        await session.add_items(ben, [item(6)])
    await session.add_items(ana, [item(6)])

    await session.set_participant_limit(ben, None)
    await session.add_items(ben, [item(6)])

    with pytest.raises(NotFound):
        await session.set_participant_limit("stranger", 5)
    with pytest.raises(InvalidRequest):
        await session.set_participant_limit(ben, "-1")

    await session.set_participant_limit(ana, 50)
    await session.remove_items(ana, [session.ledger.get(ana).items[0].id])
    await session.leave(ana)
    assert ana not in session.spending_limits.participant_limits


@pytest.mark.asyncio
async def test_payment_status_and_order_summary(clock, payment_service) -> None:
    session = new_session(clock)
    ana, ben = await join_all(session, "Ana", "Ben")
    await session.add_items(ana, [item("4.50", quantity=2, menu_item_id="fries")])
    await session.add_items(ben, [item(6, menu_item_id="fries"), item(3, menu_item_id="soda")])
    await session.set_payment_structure("equal_split")

    summary = session.order_summary()
    assert summary["leader_id"] == ana
    assert summary["total_items"] == 4
    assert summary["total_amount"] == 18.0
    assert summary["items_by_menu_item"] == [
        {"menu_item_id": "fries", "name": "Fries", "quantity": 3, "total": 15.0},
        {"menu_item_id": "soda", "name": "Soda", "quantity": 1, "total": 3.0},
    ]
    assert [(p["participant_id"], p["amount"]) for p in summary["payment_breakdown"]] == [
        (ana, 9.0),
        (ben, 9.0),
    ]

    status = session.payment_status()
    assert status["all_paid"] is False
    assert {p["payment_status"] for p in status["participants"]} == {PaymentStatus.PENDING}

    await CheckoutCoordinator(payment_service).checkout(session)

    status = session.payment_status()
    assert status["status"] == "finalized"
    assert status["all_paid"] is True
    assert all(p["paid_at"] == clock().isoformat() for p in status["participants"])


@pytest.mark.asyncio
async def test_failed_publish_releases_checkout_marker(clock, payment_service) -> None:
    failed = []

    async def on_commit(snapshot: dict) -> None:
        if snapshot["checkout_in_progress"] and not failed:
            failed.append(snapshot["version"])
            raise RuntimeError("database unavailable")

    session = new_session(clock, on_commit=on_commit)
    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item(10)])

    with pytest.raises(RuntimeError):
        await session.begin_checkout()
    assert failed
    assert not session.checkout_in_progress
    assert session.status == GroupOrderStatus.LOCKED

    result = await CheckoutCoordinator(payment_service).checkout(session)
    assert result.finalized


@pytest.mark.asyncio
async def test_finalized_snapshot_is_not_mid_checkout(clock, payment_service) -> None:
    published = []

    async def on_commit(snapshot: dict) -> None:
        published.append(snapshot)

    session = new_session(clock, on_commit=on_commit)
    (ana,) = await join_all(session, "Ana")
    await session.add_items(ana, [item(10)])
    await CheckoutCoordinator(payment_service).checkout(session)

    assert published[-1]["status"] == "finalized"
    assert published[-1]["checkout_in_progress"] is False
    assert [s["checkout_in_progress"] for s in published].count(True) == 1
