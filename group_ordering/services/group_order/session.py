"""
Group Order Session

The aggregate root of group ordering. A session owns its lifecycle state,
its participant ledger, its spending limits and its payment plan, and it is
the only object many independent request handlers mutate concurrently.

Concurrency:
    Every read-then-write operation runs inside ``self._lock`` (one
    ``asyncio.Lock`` per session), so operations on one session are
    linearized while different sessions never wait on each other. The lock
    is never held across I/O: the snapshot taken at commit time is handed to
    the persistence hook after the lock is released, and ``version`` orders
    those writes.

Lifecycle:
    created -> open -> locked -> finalized
    open | locked -> expired      (TTL elapsed)
    open | locked -> cancelled    (explicit cancel)

    finalized, expired and cancelled are terminal. Every operation re-checks
    the TTL inside the lock before acting, so a request that loses the race
    against expiry sees ``SessionClosed`` instead of half-applying.

Leadership:
    The first participant to join leads the group. Locking, cancelling,
    checking out and changing limits or the payment structure are leader
    operations: callers pass ``actor_id`` and anyone else gets
    ``LeaderRequired``. ``actor_id=None`` is reserved for trusted in-process
    callers. Leadership passes to the earliest remaining joiner when the
    leader leaves.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from group_ordering.core.exceptions import (
    InvalidRequest,
    LeaderRequired,
    LimitExceeded,
    SessionClosed,
)
from group_ordering.models import GroupOrderStatus
from group_ordering.services.group_order.ledger import (
    OrderLine,
    Participant,
    ParticipantIdentity,
    ParticipantLedger,
    PaymentStatus,
)
from group_ordering.services.group_order.money import ZERO
from group_ordering.services.group_order.payment_structure import (
    PaymentPlan,
    build_plan,
    compute_settlement,
    revalidate,
)
from group_ordering.services.group_order.spending import (
    SpendingLimits,
    build_limits,
    check_addition,
    spending_status,
    with_participant_limit,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
SnapshotHook = Callable[[dict], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


TERMINAL_STATUSES = frozenset({
    GroupOrderStatus.FINALIZED,
    GroupOrderStatus.EXPIRED,
    GroupOrderStatus.CANCELLED,
})

ALLOWED_TRANSITIONS = {
    GroupOrderStatus.CREATED: {GroupOrderStatus.OPEN},
    GroupOrderStatus.OPEN: {
        GroupOrderStatus.LOCKED,
        GroupOrderStatus.EXPIRED,
        GroupOrderStatus.CANCELLED,
    },
    GroupOrderStatus.LOCKED: {
        GroupOrderStatus.FINALIZED,
        GroupOrderStatus.EXPIRED,
        GroupOrderStatus.CANCELLED,
    },
}


@dataclass
class GroupOrderSettings:
    """Per-session settings fixed at creation."""
    max_participants: int = 8
    allow_anonymous: bool = True

    def to_dict(self) -> dict:
        return {
            "max_participants": self.max_participants,
            "allow_anonymous": self.allow_anonymous,
        }


@dataclass
class ChargeOutcome:
    """Result of charging one participant during checkout."""
    participant_id: str
    amount: Decimal
    success: bool
    payment_intent_id: Optional[str] = None
    error_message: Optional[str] = None


class GroupOrderSession:
    """
    One shared ordering session for a table.

    Mutating methods are coroutines because they wait for the session lock.
    Read-only projections (``snapshot``, ``settlement``) are plain methods:
    they never suspend, so they always observe a committed state.
    """

    def __init__(
        self,
        restaurant_id: str,
        table_id: str,
        invite_code: str,
        expires_at: datetime,
        settings: Optional[GroupOrderSettings] = None,
        clock: Clock = utc_now,
        on_commit: Optional[SnapshotHook] = None,
        warning_threshold: float = 0.8,
        session_id: Optional[str] = None,
    ):
        self.settings = settings or GroupOrderSettings()
        self.id = session_id or uuid.uuid4().hex
        self.restaurant_id = restaurant_id
        self.table_id = table_id
        self.invite_code = invite_code
        self.expires_at = expires_at
        self.status = GroupOrderStatus.CREATED
        self.version = 0

        self._clock = clock
        self._on_commit = on_commit
        self._warning_threshold = warning_threshold
        self._lock = asyncio.Lock()

        self.created_at = clock()
        self.updated_at = self.created_at
        self.closed_at: Optional[datetime] = None
        self.close_reason: Optional[str] = None
        self.checkout_in_progress = False
        self.leader_id: Optional[str] = None

        self.ledger = ParticipantLedger(
            max_participants=self.settings.max_participants,
            allow_anonymous=self.settings.allow_anonymous,
        )
        self.spending_limits = SpendingLimits()
        self.payment_plan = PaymentPlan()

    def __repr__(self):
        return f"<GroupOrderSession {self.id} - {self.invite_code} - {self.status.value}>"

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def can_resolve(self, now: Optional[datetime] = None) -> bool:
        """True while the invite code may still admit people."""
        now = now or self._clock()
        return (
            self.status in (GroupOrderStatus.CREATED, GroupOrderStatus.OPEN)
            and not self.is_expired_at(now)
        )

    def _transition(self, target: GroupOrderStatus, reason: Optional[str] = None) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.status, ()):
            raise SessionClosed(
                f"Cannot move group order from {self.status.value} to {target.value}"
            )
        previous = self.status
        self.status = target
        if target in TERMINAL_STATUSES:
            self.closed_at = self._clock()
            self.close_reason = reason
        logger.info(f"Group order {self.id}: {previous.value} -> {target.value}")

    def open(self) -> None:
        """Created -> Open. Called once by the registry right after construction."""
        self._transition(GroupOrderStatus.OPEN)
        self._commit()

    def _expire_if_due(self) -> bool:
        if self.status not in (GroupOrderStatus.OPEN, GroupOrderStatus.LOCKED):
            return False
        if not self.is_expired_at(self._clock()):
            return False
        self._transition(GroupOrderStatus.EXPIRED, reason="ttl_elapsed")
        return True

    def _require(self, *allowed: GroupOrderStatus) -> None:
        if self.status in allowed:
            return
        if self.is_terminal:
            raise SessionClosed(f"This group order is {self.status.value}")
        allowed_names = ", ".join(s.value for s in allowed)
        raise SessionClosed(
            f"Not allowed while the group order is {self.status.value} "
            f"(requires {allowed_names})"
        )

    def _require_leader(self, actor_id: Optional[str]) -> None:
        if actor_id is None:
            return
        self.ledger.get(actor_id)
        if actor_id != self.leader_id:
            raise LeaderRequired()

    def _commit(self) -> dict:
        self.version += 1
        self.updated_at = self._clock()
        return self.snapshot()

    async def _publish(self, snapshot: Optional[dict]) -> None:
        if snapshot is not None and self._on_commit is not None:
            await self._on_commit(snapshot)

    async def _apply(self, operation: Callable[[], Any], *allowed: GroupOrderStatus) -> Any:
        """
        Run ``operation`` as one critical section.

        The TTL check, the status guard and the operation all happen under
        the lock; the resulting snapshot is published after release. An
        expiry discovered on the way in is committed and published even
        though the operation itself is then rejected.
        """
        snapshot = None
        try:
            async with self._lock:
                if self._expire_if_due():
                    snapshot = self._commit()
                self._require(*allowed)
                result = operation()
                snapshot = self._commit()
        finally:
            await self._publish(snapshot)
        return result

    async def refresh(self) -> bool:
        """
        Apply a due expiry, if any.

        Returns:
            bool: True if this call moved the session to expired
        """
        snapshot = None
        async with self._lock:
            if self._expire_if_due():
                snapshot = self._commit()
        await self._publish(snapshot)
        return snapshot is not None

    # =========================================================================
    # PARTICIPANTS
    # =========================================================================

    async def join(
        self,
        identity: ParticipantIdentity,
        payment_method_id: Optional[str] = None,
    ) -> Participant:
        """
        Admit a participant. Only valid while open. The first one admitted
        becomes the group leader.

        Raises:
            SessionClosed, CapacityExceeded, IdentityRequired, InvalidRequest
        """
        def operation():
            participant = self.ledger.join(identity, self._clock(), payment_method_id)
            if self.leader_id is None:
                self.leader_id = participant.id
            logger.info(
                f"Group order {self.id}: {participant.name} joined "
                f"({len(self.ledger)}/{self.ledger.max_participants})"
            )
            return participant

        return await self._apply(operation, GroupOrderStatus.OPEN)

    async def leave(self, participant_id: str) -> Participant:
        def operation():
            participant = self.ledger.leave(participant_id)
            if self.payment_plan.payer_id == participant_id:
                self.payment_plan.payer_id = None
            self.spending_limits.participant_limits.pop(participant_id, None)
            if self.leader_id == participant_id:
                successor = self.ledger.first
                self.leader_id = successor.id if successor else None
                if successor:
                    logger.info(f"Group order {self.id}: {successor.name} now leads the group")
            logger.info(f"Group order {self.id}: {participant.name} left")
            return participant

        return await self._apply(operation, GroupOrderStatus.OPEN)

    async def update_participant(
        self,
        participant_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> Participant:
        """
        Change a participant's own name, email or payment method. Allowed
        while locked too, so a declined card can be replaced before a retry.

        Raises:
            NotFound, IdentityRequired, InvalidRequest, SessionClosed
        """
        def operation():
            participant = self.ledger.update(
                participant_id,
                ParticipantIdentity(name=name, email=email),
                payment_method_id=payment_method_id,
            )
            logger.info(f"Group order {self.id}: participant {participant.id} updated")
            return participant

        return await self._apply(operation, GroupOrderStatus.OPEN, GroupOrderStatus.LOCKED)

    # =========================================================================
    # ITEMS
    # =========================================================================

    async def add_items(self, participant_id: str, items: list[dict]) -> Participant:
        """
        Add items for one participant, all or nothing.

        The limit check and the spend update share one critical section, so
        concurrent additions for the same participant cannot jointly exceed
        the limit.

        Args:
            participant_id: Who the items are attributed to
            items: Dicts with menu_item_id, name, quantity, price and
                optional customizations / special_requests

        Raises:
            NotFound, LimitExceeded, SessionClosed, InvalidRequest
        """
        if not items:
            raise InvalidRequest("At least one item is required")

        now = self._clock()
        lines = [
            OrderLine.create(
                menu_item_id=item.get("menu_item_id"),
                name=item.get("name"),
                quantity=item.get("quantity", 1),
                unit_price=item.get("price"),
                added_at=now,
                customizations=item.get("customizations"),
                special_requests=item.get("special_requests"),
            )
            for item in items
        ]
        amount = sum((line.total for line in lines), ZERO)

        def operation():
            participant = self.ledger.get(participant_id)
            decision = check_addition(self.spending_limits, participant, amount)
            if not decision.allowed:
                raise LimitExceeded(decision.reason)
            self.ledger.add_lines(participant_id, lines)
            logger.info(
                f"Group order {self.id}: {participant.name} added {len(lines)} item(s) "
                f"(${amount:.2f}, spent ${participant.spent_amount:.2f})"
            )
            return participant

        return await self._apply(operation, GroupOrderStatus.OPEN)

    async def remove_items(self, participant_id: str, item_ids: list[str]) -> Participant:
        if not item_ids:
            raise InvalidRequest("At least one item id is required")

        def operation():
            removed = self.ledger.remove_lines(participant_id, item_ids)
            participant = self.ledger.get(participant_id)
            logger.info(
                f"Group order {self.id}: {participant.name} removed {len(removed)} item(s)"
            )
            return participant

        return await self._apply(operation, GroupOrderStatus.OPEN)

    # =========================================================================
    # SETTINGS (leader only)
    # =========================================================================

    async def set_spending_limits(
        self,
        enabled: bool,
        default_limit=None,
        participant_limits: Optional[dict] = None,
        actor_id: Optional[str] = None,
    ) -> SpendingLimits:
        """
        Replace the limit configuration wholesale. Open sessions only.

        Existing items are never re-checked against the new limits.
        """
        limits = build_limits(enabled, default_limit, participant_limits)

        def operation():
            self._require_leader(actor_id)
            unknown = [pid for pid in limits.participant_limits if pid not in self.ledger]
            if unknown:
                raise InvalidRequest(f"participantLimits reference unknown participants: {unknown}")
            self.spending_limits = limits
            logger.info(
                f"Group order {self.id}: spending limits "
                f"{'enabled' if limits.enabled else 'disabled'} "
                f"(default={limits.default_limit}, overrides={len(limits.participant_limits)})"
            )
            return limits

        return await self._apply(operation, GroupOrderStatus.OPEN)

    async def set_participant_limit(
        self,
        participant_id: str,
        limit,
        actor_id: Optional[str] = None,
    ) -> SpendingLimits:
        """
        Set (or with ``limit=None`` clear) one participant's override.

        Raises:
            NotFound, InvalidRequest, LeaderRequired, SessionClosed
        """
        def operation():
            self._require_leader(actor_id)
            participant = self.ledger.get(participant_id)
            self.spending_limits = with_participant_limit(
                self.spending_limits, participant_id, limit
            )
            logger.info(
                f"Group order {self.id}: limit for {participant.name} -> "
                f"{self.spending_limits.participant_limits.get(participant_id, 'default')}"
            )
            return self.spending_limits

        return await self._apply(operation, GroupOrderStatus.OPEN)

    async def set_payment_structure(
        self,
        structure,
        custom_splits: Optional[dict] = None,
        payer_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PaymentPlan:
        """
        Switch the payment structure. Open sessions only; frozen once locked.

        Raises:
            InvalidSplit, LeaderRequired, SessionClosed
        """
        def operation():
            self._require_leader(actor_id)
            plan = build_plan(
                structure,
                self.ledger.participants,
                custom_splits=custom_splits,
                payer_id=payer_id,
            )
            self.payment_plan = plan
            logger.info(f"Group order {self.id}: payment structure -> {plan.structure.value}")
            return plan

        return await self._apply(operation, GroupOrderStatus.OPEN)

    # =========================================================================
    # LIFECYCLE OPERATIONS (leader only)
    # =========================================================================

    def _lock_for_checkout(self) -> None:
        self.payment_plan = revalidate(self.payment_plan, self.ledger.participants)
        self._transition(GroupOrderStatus.LOCKED)

    async def lock(self, actor_id: Optional[str] = None) -> None:
        """
        Open -> Locked. Freezes participants, items and the payment plan.

        Raises:
            InvalidSplit: If a custom split no longer matches the participants
            LeaderRequired: If ``actor_id`` is not the group leader
        """
        def operation():
            self._require_leader(actor_id)
            self._lock_for_checkout()

        await self._apply(operation, GroupOrderStatus.OPEN)

    async def cancel(self, reason: Optional[str] = None, actor_id: Optional[str] = None) -> None:
        def operation():
            self._require_leader(actor_id)
            self._transition(GroupOrderStatus.CANCELLED, reason=reason or "cancelled")

        await self._apply(operation, GroupOrderStatus.OPEN, GroupOrderStatus.LOCKED)

    async def begin_checkout(self, actor_id: Optional[str] = None) -> dict[str, Decimal]:
        """
        Lock the session (if still open) and list the charges still owed.

        Returns:
            dict: participant id -> amount, for participants not yet paid

        Raises:
            SessionClosed, InvalidSplit, InvalidRequest, LeaderRequired
        """
        claimed = False

        def operation():
            nonlocal claimed
            self._require_leader(actor_id)
            if self.checkout_in_progress:
                raise InvalidRequest("Checkout already in progress", status_code=409)
            if not len(self.ledger):
                raise InvalidRequest("Cannot check out a group order without participants")
            if not any(p.items for p in self.ledger):
                raise InvalidRequest("Cannot check out a group order without items")
            if self.status == GroupOrderStatus.OPEN:
                self._lock_for_checkout()

            self.checkout_in_progress = True
            claimed = True
            return {
                pid: amount
                for pid, amount in self.settlement().items()
                if self.ledger.get(pid).payment_status != PaymentStatus.PAID
            }

        try:
            return await self._apply(operation, GroupOrderStatus.OPEN, GroupOrderStatus.LOCKED)
        except BaseException:
            # Shares never reached the caller; release the marker
            if claimed:
                self.checkout_in_progress = False
            raise

    async def complete_checkout(self, outcomes: list[ChargeOutcome]) -> bool:
        """
        Record charge results and finalize once everyone has paid.

        Returns:
            bool: True if the session is now finalized

        Raises:
            SessionClosed: If the session expired or was cancelled while the
                charges were in flight; the caller must refund
        """
        def operation():
            now = self._clock()
            for outcome in outcomes:
                participant = self.ledger.get(outcome.participant_id)
                if outcome.success:
                    participant.payment_status = PaymentStatus.PAID
                    participant.payment_intent_id = outcome.payment_intent_id
                    participant.paid_at = now
                else:
                    participant.payment_status = PaymentStatus.FAILED
            self.checkout_in_progress = False
            if all(p.payment_status == PaymentStatus.PAID for p in self.ledger):
                self._transition(GroupOrderStatus.FINALIZED, reason="checkout_completed")
            return self.status == GroupOrderStatus.FINALIZED

        try:
            return await self._apply(operation, GroupOrderStatus.LOCKED)
        finally:
            self.checkout_in_progress = False

    def abort_checkout(self) -> None:
        """Release the in-flight marker after an unexpected checkout failure."""
        self.checkout_in_progress = False

    # =========================================================================
    # PROJECTIONS
    # =========================================================================

    def settlement(self) -> dict[str, Decimal]:
        """Amount due per participant under the current plan."""
        return compute_settlement(self.payment_plan, self.ledger.participants)

    @property
    def total(self) -> Decimal:
        return self.ledger.total

    def summary(self) -> dict:
        """Short public view used by invite-code validation."""
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "table_id": self.table_id,
            "participant_count": len(self.ledger),
            "max_participants": self.settings.max_participants,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
        }

    @property
    def item_count(self) -> int:
        return sum(line.quantity for p in self.ledger for line in p.items)

    def payment_status(self) -> dict:
        """Who owes what under the current plan and whether they have paid."""
        settlement = self.settlement()
        participants = [
            {
                "participant_id": p.id,
                "name": p.name,
                "amount": float(settlement[p.id]),
                "payment_status": p.payment_status,
                "payment_intent_id": p.payment_intent_id,
                "paid_at": p.paid_at.isoformat() if p.paid_at else None,
            }
            for p in self.ledger
        ]
        return {
            "group_order_id": self.id,
            "status": self.status.value,
            "payment_structure": self.payment_plan.structure.value,
            "total": float(self.total),
            "checkout_in_progress": self.checkout_in_progress,
            "all_paid": bool(participants) and all(
                p["payment_status"] == PaymentStatus.PAID for p in participants
            ),
            "participants": participants,
        }

    def order_summary(self) -> dict:
        """
        Display summary: item quantities per menu item across the group and
        the amount each participant owes.
        """
        by_menu_item: dict[str, dict] = {}
        for participant in self.ledger:
            for line in participant.items:
                entry = by_menu_item.setdefault(line.menu_item_id, {
                    "menu_item_id": line.menu_item_id,
                    "name": line.name,
                    "quantity": 0,
                    "total": ZERO,
                })
                entry["quantity"] += line.quantity
                entry["total"] += line.total

        settlement = self.settlement()
        return {
            "group_order_id": self.id,
            "status": self.status.value,
            "leader_id": self.leader_id,
            "total_items": self.item_count,
            "total_amount": float(self.total),
            "participant_count": len(self.ledger),
            "items_by_menu_item": [
                {**entry, "total": float(entry["total"])} for entry in by_menu_item.values()
            ],
            "payment_breakdown": [
                {
                    "participant_id": p.id,
                    "participant_name": p.name,
                    "amount": float(settlement[p.id]),
                    "status": p.payment_status,
                }
                for p in self.ledger
            ],
        }

    def snapshot(self) -> dict:
        """Full JSON-ready projection; also what gets persisted."""
        participants = []
        for participant in self.ledger:
            data = participant.to_dict()
            data["is_leader"] = participant.id == self.leader_id
            data["spending"] = spending_status(
                self.spending_limits, participant, self._warning_threshold
            )
            participants.append(data)

        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "table_id": self.table_id,
            "invite_code": self.invite_code,
            "status": self.status.value,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_reason": self.close_reason,
            "checkout_in_progress": self.checkout_in_progress,
            "leader_id": self.leader_id,
            "settings": self.settings.to_dict(),
            "spending_limits": self.spending_limits.to_dict(),
            **self.payment_plan.to_dict(),
            "participants": participants,
            "totals": {
                "subtotal": float(self.total),
                "item_count": self.item_count,
                "participant_count": len(self.ledger),
            },
            "settlement": {pid: float(amount) for pid, amount in self.settlement().items()},
        }
