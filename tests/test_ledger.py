from datetime import datetime, timezone
from decimal import Decimal

import pytest

from group_ordering.core.exceptions import (
    CapacityExceeded,
    HasPendingItems,
    IdentityRequired,
    InvalidRequest,
    NotFound,
)
from group_ordering.services.group_order.ledger import (
    OrderLine,
    ParticipantIdentity,
    ParticipantLedger,
)

NOW = datetime(2026, 3, 14, 19, 0, tzinfo=timezone.utc)


def line(price: str, quantity: int = 1) -> OrderLine:
    return OrderLine.create("dish", "Dish", quantity, price, NOW)


def test_join_respects_capacity() -> None:
    ledger = ParticipantLedger(max_participants=2)
    ledger.join(ParticipantIdentity("Ana"), NOW)
    ledger.join(ParticipantIdentity("Ben"), NOW)

    with pytest.raises(CapacityExceeded):
        ledger.join(ParticipantIdentity("Cy"), NOW)
    assert len(ledger) == 2


def test_join_order_and_strictly_increasing_timestamps() -> None:
    ledger = ParticipantLedger(max_participants=5)
    joined = [ledger.join(ParticipantIdentity(name), NOW) for name in ("Ana", "Ben", "Cy")]

    assert [p.name for p in ledger] == ["Ana", "Ben", "Cy"]
    assert ledger.first is joined[0]
    assert joined[0].joined_at < joined[1].joined_at < joined[2].joined_at
    assert len(set(ledger.ids)) == 3


def test_anonymous_participants_get_guest_names() -> None:
    ledger = ParticipantLedger(max_participants=5)
    got = [ledger.join(ParticipantIdentity(), NOW).name for _ in range(2)]
    assert got == ["Guest 1", "Guest 2"]


@pytest.mark.parametrize(
    "identity",
    (
        ParticipantIdentity(),
        ParticipantIdentity(name="Ana"),
        ParticipantIdentity(email="ana@example.com"),
        ParticipantIdentity(name="   ", email="ana@example.com"),
    ),
)
def test_identity_required_when_anonymous_disabled(identity: ParticipantIdentity) -> None:
    ledger = ParticipantLedger(max_participants=5, allow_anonymous=False)
    with pytest.raises(IdentityRequired):
        ledger.join(identity, NOW)


def test_malformed_email_rejected() -> None:
    ledger = ParticipantLedger(max_participants=5)
    with pytest.raises(InvalidRequest):
        ledger.join(ParticipantIdentity("Ana", "not-an-email"), NOW)


def test_leave_blocks_with_pending_items() -> None:
    ledger = ParticipantLedger(max_participants=5)
    ana = ledger.join(ParticipantIdentity("Ana"), NOW)
    ledger.add_lines(ana.id, [line("9.50")])

    with pytest.raises(HasPendingItems):
        ledger.leave(ana.id)

    ledger.remove_lines(ana.id, [ana.items[0].id])
    ledger.leave(ana.id)
    assert ana.id not in ledger


def test_leave_unknown_participant() -> None:
    with pytest.raises(NotFound):
        ParticipantLedger(max_participants=5).leave("ghost")


def test_spent_amount_tracks_lines() -> None:
    ledger = ParticipantLedger(max_participants=5)
    ana = ledger.join(ParticipantIdentity("Ana"), NOW)
    first, second = line("4.25", quantity=2), line("3.10")

    ledger.add_lines(ana.id, [first, second])
    assert ana.spent_amount == Decimal("11.60")
    assert ledger.total == Decimal("11.60")

    ledger.remove_lines(ana.id, [first.id])
    assert ana.spent_amount == Decimal("3.10")
    assert ana.items == [second]


def test_remove_lines_is_all_or_nothing() -> None:
    ledger = ParticipantLedger(max_participants=5)
    ana = ledger.join(ParticipantIdentity("Ana"), NOW)
    kept = line("5.00")
    ledger.add_lines(ana.id, [kept])

    with pytest.raises(NotFound):
        ledger.remove_lines(ana.id, [kept.id, "missing"])
    assert ana.items == [kept]
    assert ana.spent_amount == Decimal("5.00")


@pytest.mark.parametrize(
    "menu_item_id,quantity,price",
    (
        ("", 1, "1.00"),
        ("dish", 0, "1.00"),
        ("dish", 1.5, "1.00"),
        ("dish", True, "1.00"),
        ("dish", 1, "-0.01"),
        ("dish", 1, "free"),
        ("dish", 1, "0.004"),
        ("dish", 1, "9.999"),
    ),
)
def test_order_line_validation(menu_item_id, quantity, price) -> None:
    with pytest.raises(InvalidRequest):
        OrderLine.create(menu_item_id, "Dish", quantity, price, NOW)


def test_duplicate_email_rejected() -> None:
    ledger = ParticipantLedger(max_participants=5)
    ledger.join(ParticipantIdentity("Ana", "ana@example.com"), NOW)

    with pytest.raises(InvalidRequest) as excinfo:
        ledger.join(ParticipantIdentity("Ana again", " ANA@example.com "), NOW)
    assert excinfo.value.status_code == 409
    assert len(ledger) == 1

    ledger.join(ParticipantIdentity("Guest"), NOW)
    ledger.join(ParticipantIdentity("Guest"), NOW)
    assert len(ledger) == 3


def test_update_keeps_identity_checks() -> None:
    ledger = ParticipantLedger(max_participants=5)
    ana = ledger.join(ParticipantIdentity("Ana", "ana@example.com"), NOW)
    ben = ledger.join(ParticipantIdentity("Ben", "ben@example.com"), NOW)

    ledger.update(ana.id, ParticipantIdentity(email="ana@example.com"), payment_method_id="pm_card_visa")
    assert ana.payment_method_id == "pm_card_visa"
    assert ana.to_dict()["has_payment_method"] is True

    with pytest.raises(InvalidRequest):
        ledger.update(ben.id, ParticipantIdentity(email="ana@example.com"))
    with pytest.raises(InvalidRequest):
        ledger.update(ben.id, ParticipantIdentity(email="not-an-email"))
    assert ben.email == "ben@example.com"

    ledger.update(ben.id, ParticipantIdentity(name="Benjamin"))
    assert (ben.name, ben.email) == ("Benjamin", "ben@example.com")
