"""
Spending Limit Policy

Pure evaluation of per-participant spending caps. Nothing here holds state or
locks; the session calls ``check_addition`` and commits the addition inside
the same critical section, so no concurrent addition can slip between the
check and the write.

Limits are enforced at write time only. Lowering a limit below what a
participant has already spent leaves their existing items in place; it only
blocks further additions.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from group_ordering.core.exceptions import InvalidRequest
from group_ordering.services.group_order.money import ZERO, to_money

logger = logging.getLogger(__name__)


class SpendingStatus(str, Enum):
    NO_LIMIT = "no_limit"
    WITHIN_LIMIT = "within_limit"
    APPROACHING_LIMIT = "approaching_limit"
    EXCEEDED_LIMIT = "exceeded_limit"


@dataclass
class SpendingLimits:
    """
    Limit configuration of one group order.

    Attributes:
        enabled: When False every addition is allowed
        default_limit: Cap for participants without an override (None = no cap)
        participant_limits: Per-participant overrides keyed by participant id
    """
    enabled: bool = False
    default_limit: Optional[Decimal] = None
    participant_limits: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to a JSON-ready dictionary."""
        return {
            "enabled": self.enabled,
            "default_limit": float(self.default_limit) if self.default_limit is not None else None,
            "participant_limits": {
                pid: float(limit) for pid, limit in self.participant_limits.items()
            },
        }


@dataclass
class LimitDecision:
    """Outcome of ``check_addition``."""
    allowed: bool
    limit: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    reason: Optional[str] = None


def build_limits(
    enabled: bool,
    default_limit=None,
    participant_limits: Optional[dict] = None,
) -> SpendingLimits:
    """
    Validate and build a replacement limit configuration.

    Raises:
        InvalidRequest: If any limit is negative or not a number
    """
    default = None
    if default_limit is not None:
        default = to_money(default_limit, "defaultLimit")
        if default < ZERO:
            raise InvalidRequest("defaultLimit must be zero or greater")

    overrides = {}
    for participant_id, value in (participant_limits or {}).items():
        limit = to_money(value, f"participantLimits[{participant_id}]")
        if limit < ZERO:
            raise InvalidRequest(f"Limit for participant {participant_id} must be zero or greater")
        overrides[participant_id] = limit

    return SpendingLimits(
        enabled=bool(enabled),
        default_limit=default,
        participant_limits=overrides,
    )


def with_participant_limit(limits: SpendingLimits, participant_id: str, value) -> SpendingLimits:
    """
    Copy of ``limits`` with one participant's override set, or removed when
    ``value`` is None. Setting an override also enables limits.
    """
    overrides = dict(limits.participant_limits)
    if value is None:
        overrides.pop(participant_id, None)
        return SpendingLimits(limits.enabled, limits.default_limit, overrides)

    limit = to_money(value, "limit")
    if limit < ZERO:
        raise InvalidRequest(f"Limit for participant {participant_id} must be zero or greater")
    overrides[participant_id] = limit
    return SpendingLimits(True, limits.default_limit, overrides)


def effective_limit(limits: SpendingLimits, participant_id: str) -> Optional[Decimal]:
    """Override, else default, else None (unlimited). Always None when disabled."""
    if not limits.enabled:
        return None
    if participant_id in limits.participant_limits:
        return limits.participant_limits[participant_id]
    return limits.default_limit


def check_addition(limits: SpendingLimits, participant, amount: Decimal) -> LimitDecision:
    """
    Decide whether ``participant`` may add ``amount`` more spend.

    Args:
        limits: Current limit configuration
        participant: Anything with ``id`` and ``spent_amount``
        amount: Total of the lines about to be added

    Returns:
        LimitDecision: ``allowed`` iff spent + amount <= effective limit
    """
    limit = effective_limit(limits, participant.id)
    if limit is None:
        return LimitDecision(allowed=True)

    remaining = limit - participant.spent_amount
    if participant.spent_amount + amount <= limit:
        return LimitDecision(allowed=True, limit=limit, remaining=remaining - amount)

    reason = (
        f"Adding ${amount:.2f} would exceed the ${limit:.2f} spending limit "
        f"(${max(remaining, ZERO):.2f} remaining)"
    )
    logger.info(f"Limit check rejected participant {participant.id}: {reason}")
    return LimitDecision(allowed=False, limit=limit, remaining=remaining, reason=reason)


def spending_status(limits: SpendingLimits, participant, warning_threshold: float = 0.8) -> dict:
    """
    Summarize a participant's spend against their limit for display.

    A zero limit with zero spend counts as within the limit.
    """
    spent = participant.spent_amount
    limit = effective_limit(limits, participant.id)

    if limit is None:
        return {"current_spending": float(spent), "status": SpendingStatus.NO_LIMIT.value}

    if spent > limit:
        status = SpendingStatus.EXCEEDED_LIMIT
    elif limit > ZERO and spent / limit >= Decimal(str(warning_threshold)):
        status = SpendingStatus.APPROACHING_LIMIT
    else:
        status = SpendingStatus.WITHIN_LIMIT

    percentage_used = float(spent / limit * 100) if limit > ZERO else 0.0

    return {
        "current_spending": float(spent),
        "limit": float(limit),
        "percentage_used": round(percentage_used, 1),
        "status": status.value,
    }
