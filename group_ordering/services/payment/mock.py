"""
Mock Payment Service Implementation

Simulates gateway charges without network calls. Used in development mode
(ENV_MODE=development) and by the test suite to:
    - Run a whole group checkout locally
    - Rehearse partial failures (some participants declined)
    - Load-test checkout without incurring costs

Behavior:
    - Simulates response times between min_latency and max_latency
    - Declines a configurable share of charges with Stripe-like codes
    - Always declines Stripe's declining test payment methods
    - Generates Stripe-like IDs (pi_mock_xxx, re_mock_xxx)
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from group_ordering.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        failure_rate: Probability of a simulated decline (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        charges: Every successful charge, by payment intent id
        refunds: Payment intent ids refunded so far

    Example:
        >>> service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)
        >>> result = await service.process_payment(12.50)
        >>> result.success
        True
    """

    # Simulated decline reasons (mimics real Stripe decline codes)
    DECLINE_REASONS = [
        ("card_declined", "Your card was declined."),
        ("insufficient_funds", "Your card has insufficient funds."),
        ("expired_card", "Your card has expired."),
        ("incorrect_cvc", "Your card's security code is incorrect."),
        ("processing_error", "An error occurred while processing your card."),
    ]

    # Stripe test payment methods that always fail
    DECLINING_PAYMENT_METHODS = {
        "pm_card_visa_chargeDeclined": ("card_declined", "Your card was declined."),
        "pm_card_chargeDeclinedInsufficientFunds": (
            "insufficient_funds", "Your card has insufficient funds."
        ),
        "pm_card_authenticationRequired": (
            "requires_action", "This card requires authentication."
        ),
    }

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.05,
        max_latency: float = 0.2,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.charges: dict[str, PaymentResult] = {}
        self.refunds: list[str] = []
        self._idempotent: dict[str, PaymentResult] = {}

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> float:
        """Sleep for a random latency; returns it in milliseconds."""
        latency = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def process_payment(
        self,
        amount: float,
        currency: str = "usd",
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> PaymentResult:
        logger.debug(f"Mock: Processing payment of ${amount:.2f} {currency.upper()}")

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]

        latency_ms = await self._simulate_latency()

        declined = self.DECLINING_PAYMENT_METHODS.get(payment_method_id)
        if declined is None and self._should_fail():
            declined = random.choice(self.DECLINE_REASONS)

        if declined:
            error_code, error_message = declined
            logger.debug(f"Mock: Payment declined - {error_code}")
            return PaymentResult(
                success=False,
                amount=amount,
                currency=currency,
                error_message=error_message,
                error_code=error_code,
                response_time_ms=latency_ms,
            )

        payment_intent_id = f"pi_mock_{uuid.uuid4().hex[:24]}"
        result = PaymentResult(
            success=True,
            payment_intent_id=payment_intent_id,
            amount=amount,
            currency=currency,
            response_time_ms=latency_ms,
            metadata={
                "customer_email": customer_email,
                "customer_name": customer_name,
                "description": description,
                "payment_method_id": payment_method_id,
                "mock": True,
                **(metadata or {}),
            },
        )
        self.charges[payment_intent_id] = result
        if idempotency_key:
            self._idempotent[idempotency_key] = result

        logger.info(f"Mock: Payment successful - {payment_intent_id} - ${amount:.2f}")
        return result

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        await self._simulate_latency()

        charge = self.charges.get(payment_intent_id)
        if charge is None:
            return RefundResult(
                success=False,
                status="failed",
                error_message="Unknown payment intent ID",
            )

        self.refunds.append(payment_intent_id)
        refund_id = f"re_mock_{uuid.uuid4().hex[:24]}"
        logger.info(f"Mock: Refund processed - {refund_id} ({reason or 'no reason'})")

        return RefundResult(
            success=True,
            refund_id=refund_id,
            amount=amount if amount is not None else charge.amount,
            status="succeeded",
        )

    async def health_check(self) -> bool:
        return True
