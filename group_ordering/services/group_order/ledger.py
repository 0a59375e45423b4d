"""
Participant Ledger

Owns the participants of one group order: admission (capacity, identity,
uniqueness), departure, and the order lines each participant contributes.

The ledger itself never suspends and takes no locks. The owning
``GroupOrderSession`` calls it only while holding its ``asyncio.Lock``, which
is what makes "check capacity, then append" a single atomic step.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from group_ordering.core.exceptions import (
    CapacityExceeded,
    HasPendingItems,
    IdentityRequired,
    InvalidRequest,
    NotFound,
)
from group_ordering.services.group_order.money import ZERO, to_money

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[\w\.\+-]+@[\w\.-]+\.\w+$")


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


@dataclass
class OrderLine:
    """A menu item a participant added to the shared order."""
    id: str
    menu_item_id: str
    name: str
    quantity: int
    unit_price: Decimal
    added_at: datetime
    customizations: list[str] = field(default_factory=list)
    special_requests: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity

    @classmethod
    def create(
        cls,
        menu_item_id: str,
        name: str,
        quantity: int,
        unit_price,
        added_at: datetime,
        customizations: Optional[list[str]] = None,
        special_requests: Optional[str] = None,
    ) -> "OrderLine":
        """Validate raw item input and build a line with a fresh id."""
        if not menu_item_id or not str(menu_item_id).strip():
            raise InvalidRequest("menuItemId is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidRequest("quantity must be a positive integer")
        price = to_money(unit_price, "price")
        if price < ZERO:
            raise InvalidRequest("price must be zero or greater")

        return cls(
            id=uuid.uuid4().hex,
            menu_item_id=str(menu_item_id).strip(),
            name=(name or str(menu_item_id)).strip(),
            quantity=quantity,
            unit_price=price,
            added_at=added_at,
            customizations=list(customizations or []),
            special_requests=special_requests,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": float(self.unit_price),
            "total": float(self.total),
            "customizations": list(self.customizations),
            "special_requests": self.special_requests,
            "added_at": self.added_at.isoformat(),
        }


@dataclass
class Participant:
    """
    One diner in a group order.

    ``spent_amount`` always equals the sum of ``items`` totals; only
    ``ParticipantLedger.add_lines`` and ``remove_lines`` change either.
    """
    id: str
    name: str
    email: Optional[str]
    joined_at: datetime
    items: list[OrderLine] = field(default_factory=list)
    spent_amount: Decimal = ZERO
    payment_status: str = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "joined_at": self.joined_at.isoformat(),
            "items": [line.to_dict() for line in self.items],
            "spent_amount": float(self.spent_amount),
            "payment_status": self.payment_status,
            "payment_intent_id": self.payment_intent_id,
            "has_payment_method": self.payment_method_id is not None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


@dataclass
class ParticipantIdentity:
    """Who is asking to join. Both fields optional for anonymous sessions."""
    name: Optional[str] = None
    email: Optional[str] = None

    def cleaned(self) -> "ParticipantIdentity":
        name = (self.name or "").strip() or None
        email = (self.email or "").strip() or None
        return ParticipantIdentity(name=name, email=email)


class ParticipantLedger:
    """
    Ordered participant set with capacity and identity rules.

    Insertion order is join order; the first participant is the deterministic
    tie-breaker for settlement rounding and the default ``pay_all`` payer.

    Attributes:
        max_participants: Capacity bound (invariant: len(self) <= this)
        allow_anonymous: If False, every participant needs a name and email
    """

    def __init__(self, max_participants: int, allow_anonymous: bool = True):
        self.max_participants = max_participants
        self.allow_anonymous = allow_anonymous
        self._participants: dict[str, Participant] = {}
        self._guest_counter = 0

    def __len__(self) -> int:
        return len(self._participants)

    def __iter__(self):
        return iter(self._participants.values())

    def __contains__(self, participant_id) -> bool:
        return participant_id in self._participants

    @property
    def participants(self) -> list[Participant]:
        return list(self._participants.values())

    @property
    def ids(self) -> list[str]:
        return list(self._participants)

    @property
    def first(self) -> Optional[Participant]:
        return next(iter(self._participants.values()), None)

    @property
    def is_full(self) -> bool:
        return len(self._participants) >= self.max_participants

    @property
    def total(self) -> Decimal:
        return sum((p.spent_amount for p in self._participants.values()), ZERO)

    def get(self, participant_id: str) -> Participant:
        try:
            return self._participants[participant_id]
        except KeyError:
            raise NotFound(f"Participant {participant_id} is not part of this group order")

    # =========================================================================
    # ADMISSION
    # =========================================================================

    def _check_identity(self, identity: ParticipantIdentity, exclude: Optional[str] = None) -> None:
        if not self.allow_anonymous and not (identity.name and identity.email):
            raise IdentityRequired()
        if identity.email is None:
            return
        if not EMAIL_PATTERN.match(identity.email):
            raise InvalidRequest("Invalid email format")
        email = identity.email.lower()
        for participant in self._participants.values():
            if participant.id != exclude and participant.email and participant.email.lower() == email:
                raise InvalidRequest(
                    f"{identity.email} has already joined this group order", status_code=409
                )

    def join(
        self,
        identity: ParticipantIdentity,
        now: datetime,
        payment_method_id: Optional[str] = None,
    ) -> Participant:
        """
        Admit a participant.

        Raises:
            CapacityExceeded: If the ledger already holds max_participants
            IdentityRequired: If anonymous joins are off and name/email is blank
            InvalidRequest: If an email is malformed or already in the order (409)
        """
        identity = identity.cleaned()
        self._check_identity(identity)
        if self.is_full:
            raise CapacityExceeded(
                f"This group order is full ({self.max_participants} participants)"
            )

        participant_id = uuid.uuid4().hex
        if participant_id in self._participants:
            raise InvalidRequest("Participant id collision, please retry")

        name = identity.name
        if name is None:
            self._guest_counter += 1
            name = f"Guest {self._guest_counter}"

        # joinedAt must be strictly increasing even when the clock is coarse
        last = next(reversed(self._participants.values()), None)
        joined_at = now
        if last is not None and joined_at <= last.joined_at:
            joined_at = last.joined_at + timedelta(microseconds=1)

        participant = Participant(
            id=participant_id,
            name=name,
            email=identity.email,
            joined_at=joined_at,
            payment_method_id=payment_method_id,
        )
        self._participants[participant_id] = participant
        return participant

    def update(
        self,
        participant_id: str,
        identity: ParticipantIdentity,
        payment_method_id: Optional[str] = None,
    ) -> Participant:
        """
        Change a participant's name, email or payment method.

        Fields left as None keep their current value; the merged identity goes
        through the same checks as a join.
        """
        participant = self.get(participant_id)
        identity = identity.cleaned()
        merged = ParticipantIdentity(
            name=identity.name or participant.name,
            email=identity.email or participant.email,
        )
        self._check_identity(merged, exclude=participant_id)

        participant.name = merged.name
        participant.email = merged.email
        if payment_method_id:
            participant.payment_method_id = payment_method_id.strip()
        return participant

    def leave(self, participant_id: str) -> Participant:
        """
        Remove a participant who has no items.

        Raises:
            NotFound: Unknown participant
            HasPendingItems: The participant still has items in the order
        """
        participant = self.get(participant_id)
        if participant.items:
            raise HasPendingItems(
                f"{participant.name} still has {len(participant.items)} item(s) in the order"
            )
        return self._participants.pop(participant_id)

    # =========================================================================
    # ORDER LINES
    # =========================================================================

    def add_lines(self, participant_id: str, lines: Iterable[OrderLine]) -> Participant:
        participant = self.get(participant_id)
        for line in lines:
            participant.items.append(line)
            participant.spent_amount += line.total
        return participant

    def remove_lines(self, participant_id: str, item_ids: Iterable[str]) -> list[OrderLine]:
        """
        Remove lines by id, all or nothing.

        Raises:
            NotFound: If any id is not one of this participant's lines
        """
        participant = self.get(participant_id)
        wanted = list(dict.fromkeys(item_ids))
        owned = {line.id: line for line in participant.items}

        missing = [item_id for item_id in wanted if item_id not in owned]
        if missing:
            raise NotFound(f"Item(s) {', '.join(missing)} not found for this participant")

        removed = [owned[item_id] for item_id in wanted]
        removed_ids = set(wanted)
        participant.items = [line for line in participant.items if line.id not in removed_ids]
        participant.spent_amount = sum((line.total for line in participant.items), ZERO)
        return removed
