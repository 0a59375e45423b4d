from decimal import Decimal

import pytest

from group_ordering.core.exceptions import InvalidRequest
from group_ordering.services.group_order.spending import (
    SpendingLimits,
    build_limits,
    check_addition,
    effective_limit,
    spending_status,
    with_participant_limit,
)
from helpers import participants


def test_effective_limit_prefers_override() -> None:
    limits = build_limits(True, 25, {"p1": 40})

    assert effective_limit(limits, "p1") == Decimal("40.00")
    assert effective_limit(limits, "p2") == Decimal("25.00")


def test_effective_limit_unlimited_when_disabled() -> None:
    limits = build_limits(False, 25, {"p1": 40})

    assert effective_limit(limits, "p1") is None
    assert effective_limit(limits, "p2") is None


def test_no_default_means_unlimited() -> None:
    limits = build_limits(True, None, {})
    (diner,) = participants("500.00")

    assert check_addition(limits, diner, Decimal("1000.00")).allowed


def test_check_addition_boundary() -> None:
    limits = build_limits(True, "25.00")
    (diner,) = participants("5.00")

    at_limit = check_addition(limits, diner, Decimal("20.00"))
    assert at_limit.allowed
    assert at_limit.remaining == Decimal("0.00")

    over = check_addition(limits, diner, Decimal("20.01"))
    assert not over.allowed
    assert over.limit == Decimal("25.00")
    assert "25.00" in over.reason


def test_zero_limit_blocks_everything_but_free_items() -> None:
    limits = build_limits(True, 0)
    (diner,) = participants("0.00")

    assert check_addition(limits, diner, Decimal("0.00")).allowed
    assert not check_addition(limits, diner, Decimal("0.01")).allowed


@pytest.mark.parametrize(
    "default_limit,participant_limits",
    (
        (-1, {}),
        (10, {"p1": -5}),
        ("abc", {}),
        (10, {"p1": float("nan")}),
        ("12.345", {}),
        (10, {"p1": "0.001"}),
    ),
)
def test_build_limits_rejects_bad_values(default_limit, participant_limits) -> None:
    with pytest.raises(InvalidRequest):
        build_limits(True, default_limit, participant_limits)


@pytest.mark.parametrize(
    "spent,expected",
    (
        ("0.00", "within_limit"),
        ("19.99", "within_limit"),
        ("20.00", "approaching_limit"),
        ("25.00", "approaching_limit"),
        ("30.00", "exceeded_limit"),
    ),
)
def test_spending_status(spent: str, expected: str) -> None:
    limits = build_limits(True, 25)
    (diner,) = participants(spent)

    got = spending_status(limits, diner, warning_threshold=0.8)
    assert got["status"] == expected
    assert got["limit"] == 25.0


def test_spending_status_without_limit() -> None:
    (diner,) = participants("12.00")
    got = spending_status(SpendingLimits(), diner)
    assert got == {"current_spending": 12.0, "status": "no_limit"}


def test_with_participant_limit() -> None:
    limits = SpendingLimits()

    limits = with_participant_limit(limits, "p1", 15)
    assert limits.enabled
    assert effective_limit(limits, "p1") == Decimal("15.00")
    assert effective_limit(limits, "p2") is None

    cleared = with_participant_limit(limits, "p1", None)
    assert cleared.participant_limits == {}
    assert cleared.enabled
    assert limits.participant_limits == {"p1": Decimal("15.00")}

    with pytest.raises(InvalidRequest):
        with_participant_limit(limits, "p1", -1)
    with pytest.raises(InvalidRequest):
        with_participant_limit(limits, "p1", "7.125")
