"""
Stripe Payment Service Implementation

Gateway implementation on the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment

Security Notes:
    - Never log card details
    - Every group checkout charge carries an idempotency key so a retried
      checkout never charges a participant twice
"""

import logging
from datetime import datetime
from typing import Optional

import stripe

from group_ordering.core.config import get_settings
from group_ordering.services.group_order.money import to_cents, to_money
from group_ordering.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)

# Intent states that can still be cancelled without money having moved
CANCELLABLE_STATUSES = frozenset({
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
})


class StripePaymentService(BasePaymentService):
    """
    Stripe payment service.

    Each participant share becomes one PaymentIntent, confirmed server-side
    against the card the participant saved and tagged with the group order
    and participant ids in its metadata.

    Example:
        >>> service = StripePaymentService()
        >>> result = await service.process_payment(
        ...     amount=18.50,
        ...     customer_email="ana@example.com",
        ...     payment_method_id="pm_card_visa",
        ... )
    """

    def __init__(self):
        """
        Initialize Stripe with the API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required outside development mode. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"
        self._currency = settings.stripe_currency

        logger.info(f"StripePaymentService initialized (api_version={stripe.api_version})")

    @property
    def provider_name(self) -> str:
        return "stripe"

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> float:
        return (datetime.now() - start_time).total_seconds() * 1000

    async def _cancel_intent(self, payment_intent_id: str) -> None:
        try:
            await stripe.PaymentIntent.cancel_async(payment_intent_id)
            logger.info(f"Stripe: PaymentIntent {payment_intent_id} cancelled")
        except stripe.StripeError as e:
            logger.error(f"Stripe: Could not cancel {payment_intent_id} - {e}")

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
        """
        Create and confirm a card PaymentIntent for one participant's share.

        The charge counts as paid only when the intent reaches ``succeeded``.
        An intent left waiting (3-D Secure, a missing method) is cancelled and
        reported as a failure carrying the intent status as ``error_code``.
        Declines and API errors come back as ``success=False`` results.
        """
        start_time = datetime.now()
        logger.info(f"Stripe: Processing payment of ${amount:.2f}")

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        if not payment_method_id:
            return PaymentResult(
                success=False,
                error_message="No payment method on file for this participant",
                error_code="payment_method_required",
            )

        try:
            intent = await stripe.PaymentIntent.create_async(
                amount=to_cents(to_money(amount)),
                currency=currency or self._currency,
                payment_method=payment_method_id,
                payment_method_types=["card"],
                confirm=True,
                description=description or "Group order",
                receipt_email=customer_email,
                metadata={
                    "customer_name": customer_name or "",
                    "source": "group_ordering",
                    **{k: str(v) for k, v in (metadata or {}).items()},
                },
                idempotency_key=idempotency_key,
            )

            logger.info(f"Stripe: PaymentIntent created - {intent.id} - status={intent.status}")

            if intent.status != "succeeded":
                if intent.status in CANCELLABLE_STATUSES:
                    await self._cancel_intent(intent.id)
                return PaymentResult(
                    success=False,
                    payment_intent_id=intent.id,
                    amount=intent.amount / 100.0,
                    currency=intent.currency,
                    error_message=f"Payment not completed (status: {intent.status})",
                    error_code=intent.status,
                    response_time_ms=self._elapsed_ms(start_time),
                    metadata={"status": intent.status},
                )

            return PaymentResult(
                success=True,
                payment_intent_id=intent.id,
                amount=intent.amount / 100.0,
                currency=intent.currency,
                response_time_ms=self._elapsed_ms(start_time),
                metadata={"status": intent.status},
            )

        except stripe.CardError as e:
            logger.warning(f"Stripe: Card declined - {e.code}: {e.user_message}")
            return PaymentResult(
                success=False,
                error_message=e.user_message,
                error_code=e.code,
                response_time_ms=self._elapsed_ms(start_time),
            )

        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe: Invalid request - {e}")
            return PaymentResult(
                success=False,
                error_message=str(e),
                error_code="invalid_request",
                response_time_ms=self._elapsed_ms(start_time),
            )

        except stripe.AuthenticationError as e:
            logger.critical(f"Stripe: Authentication failed - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        except stripe.APIConnectionError as e:
            logger.error(f"Stripe: Connection error - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=self._elapsed_ms(start_time),
            )

        except stripe.StripeError as e:
            logger.error(f"Stripe: Error - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment processing error",
                error_code="stripe_error",
                response_time_ms=self._elapsed_ms(start_time),
            )

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a PaymentIntent.

        Args:
            payment_intent_id: The PaymentIntent to refund
            amount: Partial refund amount (None = full refund)
            reason: Stripe reason code (duplicate, fraudulent, requested_by_customer)
        """
        refund_params = {"payment_intent": payment_intent_id}
        if amount is not None:
            refund_params["amount"] = to_cents(to_money(amount))
        if reason:
            refund_params["reason"] = reason

        try:
            refund = await stripe.Refund.create_async(**refund_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe: Refund of {payment_intent_id} failed - {e}")
            return RefundResult(success=False, status="failed", error_message=str(e))

        logger.info(f"Stripe: Refund processed - {refund.id} - status={refund.status}")
        return RefundResult(
            success=True,
            refund_id=refund.id,
            amount=refund.amount / 100.0,
            status=refund.status,
        )

    async def health_check(self) -> bool:
        """Verify credentials with a lightweight account lookup."""
        try:
            await stripe.Account.retrieve_async()
            return True
        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
