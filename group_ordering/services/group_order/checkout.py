"""
Group Checkout

Takes a session from open (or locked) to finalized by charging every
participant their settlement share through the configured payment service.

Flow:
    1. ``begin_checkout`` locks the session and returns the unpaid shares
       (under the session lock).
    2. Shares are charged concurrently with no lock held; a slow gateway
       never stalls other requests on the session.
    3. ``complete_checkout`` records the results (under the lock) and
       finalizes once everyone has paid. Declined participants leave the
       session locked, and a retry charges only them.

If the session was cancelled or expired while charges were in flight, the
charges just taken are refunded and ``SessionClosed`` propagates.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from group_ordering.core.exceptions import SessionClosed
from group_ordering.services.group_order.money import ZERO
from group_ordering.services.group_order.session import ChargeOutcome, GroupOrderSession
from group_ordering.services.payment.base import BasePaymentService

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    group_order_id: str
    status: str
    finalized: bool
    settlement: dict[str, Decimal]
    payments: list[ChargeOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "group_order_id": self.group_order_id,
            "status": self.status,
            "finalized": self.finalized,
            "settlement": {pid: float(amount) for pid, amount in self.settlement.items()},
            "payments": [
                {
                    "participant_id": outcome.participant_id,
                    "amount": float(outcome.amount),
                    "success": outcome.success,
                    "payment_intent_id": outcome.payment_intent_id,
                    "error_message": outcome.error_message,
                }
                for outcome in self.payments
            ],
        }


class CheckoutCoordinator:
    """
    Drives group checkout against a payment gateway.

    Example:
        >>> coordinator = CheckoutCoordinator(get_payment_service())
        >>> result = await coordinator.checkout(session)
        >>> result.finalized
        True
    """

    def __init__(self, payment_service: BasePaymentService, currency: str = "usd"):
        self.payment_service = payment_service
        self.currency = currency

    async def _charge(
        self,
        session: GroupOrderSession,
        participant_id: str,
        amount: Decimal,
    ) -> ChargeOutcome:
        if amount <= ZERO:
            return ChargeOutcome(participant_id=participant_id, amount=amount, success=True)

        participant = session.ledger.get(participant_id)
        result = await self.payment_service.process_payment(
            amount=float(amount),
            currency=self.currency,
            customer_email=participant.email,
            customer_name=participant.name,
            payment_method_id=participant.payment_method_id,
            description=f"Group order {session.invite_code} at table {session.table_id}",
            metadata={
                "group_order_id": session.id,
                "participant_id": participant_id,
                "restaurant_id": session.restaurant_id,
            },
            # version moves on after every recorded attempt, so a retry after
            # a decline is a new charge, while a replay of this one is not
            idempotency_key=f"{session.id}-{participant_id}-v{session.version}",
        )

        if not result.success:
            logger.warning(
                f"Group order {session.id}: charge for {participant.name} declined "
                f"({result.error_code}: {result.error_message})"
            )
        return ChargeOutcome(
            participant_id=participant_id,
            amount=amount,
            success=result.success,
            payment_intent_id=result.payment_intent_id,
            error_message=result.error_message,
        )

    async def _refund(self, session: GroupOrderSession, outcomes: list[ChargeOutcome]) -> None:
        for outcome in outcomes:
            if not (outcome.success and outcome.payment_intent_id):
                continue
            refund = await self.payment_service.refund_payment(
                outcome.payment_intent_id,
                reason="requested_by_customer",
            )
            if refund.success:
                logger.info(
                    f"Group order {session.id}: refunded {outcome.payment_intent_id} "
                    f"(${outcome.amount:.2f})"
                )
            else:
                logger.error(
                    f"Group order {session.id}: refund of {outcome.payment_intent_id} "
                    f"failed: {refund.error_message}"
                )

    async def checkout(
        self,
        session: GroupOrderSession,
        actor_id: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Charge all unpaid shares and finalize when everyone has paid.

        Raises:
            SessionClosed: Session terminal before or during checkout
            InvalidSplit: Stale custom split at lock time
            InvalidRequest: Nothing to check out, or a checkout already running
            LeaderRequired: ``actor_id`` is not the group leader
        """
        owed = await session.begin_checkout(actor_id)
        settlement = session.settlement()
        logger.info(
            f"Group order {session.id}: checkout of ${sum(owed.values(), ZERO):.2f} "
            f"across {len(owed)} participant(s) via {self.payment_service.provider_name}"
        )

        try:
            results = await asyncio.gather(
                *(self._charge(session, pid, amount) for pid, amount in owed.items()),
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            session.abort_checkout()
            raise

        outcomes = []
        for (pid, amount), result in zip(owed.items(), results):
            if isinstance(result, BaseException):
                logger.exception(
                    f"Group order {session.id}: charging {pid} raised", exc_info=result
                )
                result = ChargeOutcome(
                    participant_id=pid,
                    amount=amount,
                    success=False,
                    error_message="Payment processing error",
                )
            outcomes.append(result)

        try:
            finalized = await session.complete_checkout(outcomes)
        except SessionClosed:
            logger.warning(
                f"Group order {session.id} closed during checkout ({session.status.value}); "
                f"refunding"
            )
            await self._refund(session, outcomes)
            raise

        return CheckoutResult(
            group_order_id=session.id,
            status=session.status.value,
            finalized=finalized,
            settlement=settlement,
            payments=outcomes,
        )
