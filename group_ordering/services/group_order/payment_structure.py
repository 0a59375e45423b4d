"""
Payment Structure Resolver

Validates how a group's bill is divided and computes what each participant
owes at checkout.

Structures:
    - pay_own:      each participant pays for their own items
    - equal_split:  the total divided evenly across participants present at
                    settlement time (not when the structure was chosen)
    - pay_all:      one participant (``payer_id``, default the first joiner)
                    pays everything
    - custom_split: explicit percentages per participant, summing to 100

Settlement always totals exactly the order grand total. Amounts are worked in
integer cents and any remainder from division lands on the first joiner, so
splitting $10.00 three ways gives $3.34, $3.33, $3.33.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

from group_ordering.core.exceptions import InvalidRequest, InvalidSplit
from group_ordering.services.group_order.money import (
    ZERO,
    from_cents,
    to_cents,
    to_money,
)

logger = logging.getLogger(__name__)

SPLIT_TOTAL_PERCENT = Decimal("100")
SPLIT_EPSILON = Decimal("0.01")


class PaymentStructure(str, Enum):
    PAY_OWN = "pay_own"
    EQUAL_SPLIT = "equal_split"
    PAY_ALL = "pay_all"
    CUSTOM_SPLIT = "custom_split"

    @classmethod
    def parse(cls, value) -> "PaymentStructure":
        """Accept enum members, values, and ``custom`` as an alias."""
        if isinstance(value, cls):
            return value
        if value == "custom":
            return cls.CUSTOM_SPLIT
        try:
            return cls(value)
        except ValueError:
            valid = [s.value for s in cls]
            raise InvalidSplit(f"Unknown payment structure {value!r}. Options: {valid}")


@dataclass
class PaymentPlan:
    """A validated payment structure with its parameters."""
    structure: PaymentStructure = PaymentStructure.PAY_OWN
    custom_splits: dict[str, Decimal] = field(default_factory=dict)
    payer_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "payment_structure": self.structure.value,
            "custom_splits": (
                {pid: float(share) for pid, share in self.custom_splits.items()}
                if self.structure == PaymentStructure.CUSTOM_SPLIT else None
            ),
            "payer_id": self.payer_id,
        }


def build_plan(
    structure,
    participants: Sequence,
    custom_splits: Optional[dict] = None,
    payer_id: Optional[str] = None,
) -> PaymentPlan:
    """
    Validate a requested structure against the current participants.

    Args:
        structure: PaymentStructure or its string value
        participants: Current participants in join order (need ``id``)
        custom_splits: Percent per participant id, for custom_split only
        payer_id: Paying participant, for pay_all only

    Raises:
        InvalidSplit: If the structure is unknown or its parameters do not fit
    """
    structure = PaymentStructure.parse(structure)
    participant_ids = [p.id for p in participants]

    if structure == PaymentStructure.PAY_ALL:
        if payer_id is not None and payer_id not in participant_ids:
            raise InvalidSplit(f"Payer {payer_id} is not a participant")
        return PaymentPlan(structure=structure, payer_id=payer_id)

    if structure != PaymentStructure.CUSTOM_SPLIT:
        return PaymentPlan(structure=structure)

    if not custom_splits:
        raise InvalidSplit("customSplits are required for custom_split")
    if not participant_ids:
        raise InvalidSplit("custom_split needs at least one participant")

    splits = {}
    for pid, value in custom_splits.items():
        try:
            share = to_money(value, f"customSplits[{pid}]")
        except InvalidRequest as e:
            raise InvalidSplit(e.message)
        if share < ZERO:
            raise InvalidSplit(f"Split for {pid} must be zero or greater")
        splits[pid] = share

    unknown = sorted(set(splits) - set(participant_ids))
    if unknown:
        raise InvalidSplit(f"customSplits reference unknown participants: {unknown}")
    uncovered = [pid for pid in participant_ids if pid not in splits]
    if uncovered:
        raise InvalidSplit(f"customSplits must cover every participant, missing: {uncovered}")

    total = sum(splits.values(), ZERO)
    if abs(total - SPLIT_TOTAL_PERCENT) > SPLIT_EPSILON:
        raise InvalidSplit(f"customSplits must add up to 100%, got {total}%")

    # Keep join order so settlement iteration is deterministic
    ordered = {pid: splits[pid] for pid in participant_ids}
    return PaymentPlan(structure=structure, custom_splits=ordered)


def revalidate(plan: PaymentPlan, participants: Sequence) -> PaymentPlan:
    """Re-run validation after the participant set may have changed."""
    return build_plan(
        plan.structure,
        participants,
        custom_splits=plan.custom_splits,
        payer_id=plan.payer_id,
    )


def resolve_payer(plan: PaymentPlan, participants: Sequence) -> Optional[str]:
    """The pay_all payer, falling back to the first joiner."""
    ids = [p.id for p in participants]
    if plan.payer_id in ids:
        return plan.payer_id
    return ids[0] if ids else None


def compute_settlement(plan: PaymentPlan, participants: Sequence) -> dict[str, Decimal]:
    """
    Amount due per participant, in join order.

    Pure function of the plan and the participants' ``spent_amount``. The
    values always sum to the grand total (sum of all spend).
    """
    if not participants:
        return {}

    ids = [p.id for p in participants]
    total_cents = sum(to_cents(p.spent_amount) for p in participants)
    due = dict.fromkeys(ids, 0)

    if plan.structure == PaymentStructure.PAY_OWN:
        for p in participants:
            due[p.id] = to_cents(p.spent_amount)

    elif plan.structure == PaymentStructure.EQUAL_SPLIT:
        share, remainder = divmod(total_cents, len(ids))
        for pid in ids:
            due[pid] = share
        due[ids[0]] += remainder

    elif plan.structure == PaymentStructure.PAY_ALL:
        due[resolve_payer(plan, participants)] = total_cents

    else:
        # Participants missing from a stale split owe nothing here; lock()
        # refuses to proceed with a stale split in the first place.
        for pid in ids:
            percent = plan.custom_splits.get(pid, ZERO)
            due[pid] = to_cents(from_cents(total_cents) * percent / SPLIT_TOTAL_PERCENT)
        remainder = total_cents - sum(due.values())
        target = next((pid for pid in ids if due[pid] + remainder >= 0), ids[0])
        due[target] += remainder

    return {pid: from_cents(cents) for pid, cents in due.items()}
