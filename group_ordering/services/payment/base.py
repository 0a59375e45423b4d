"""
Payment Service Abstract Base Class

Defines the interface contract for charging group order participants.
Both MockPaymentService and StripePaymentService implement these methods,
so checkout behaves the same regardless of which gateway is active.

Design Pattern: Strategy Pattern
    - The gateway is picked at runtime from ENV_MODE
    - Checkout code only ever sees BasePaymentService
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class PaymentResult:
    """
    Standardized result from charging one participant.

    Attributes:
        success: Whether the charge went through
        payment_intent_id: Gateway identifier for the charge (Stripe format: pi_xxx)
        amount: Amount charged in dollars
        currency: Currency code (e.g., "usd")
        error_message: Human-readable decline or failure reason
        error_code: Machine-readable error code
        response_time_ms: Time the gateway took to answer
        metadata: Extra data returned by the gateway
    """
    success: bool
    payment_intent_id: Optional[str] = None
    amount: Optional[float] = None
    currency: str = "usd"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "payment_intent_id": self.payment_intent_id,
            "amount": self.amount,
            "currency": self.currency,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund was accepted
        refund_id: Gateway identifier for the refund
        amount: Amount refunded in dollars (None = full refund)
        status: Refund status (pending, succeeded, failed)
        error_message: Error description if the refund failed
    """
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[float] = None
    status: str = "pending"
    error_message: Optional[str] = None


class BasePaymentService(ABC):
    """
    Abstract base class for payment services.

    Example:
        >>> service = get_payment_service()  # Mock or Stripe
        >>> result = await service.process_payment(
        ...     amount=18.50,
        ...     customer_email="ana@example.com",
        ...     metadata={"group_order_id": session.id},
        ... )
        >>> if result.success:
        ...     print(f"Payment ID: {result.payment_intent_id}")
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the payment provider ("mock", "stripe")."""
        pass

    @abstractmethod
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
        Charge one participant.

        Args:
            amount: Amount to charge in dollars (e.g., 18.50)
            currency: Three-letter currency code (default: "usd")
            customer_email: Participant email for the receipt
            customer_name: Participant display name
            description: Description of the charge
            metadata: Additional key-value data to attach
            idempotency_key: Key that makes a retried charge safe
            payment_method_id: Saved payment method to confirm the charge with

        Returns:
            PaymentResult: Standardized result object

        Note:
            Declines are reported through ``success=False``, never raised.
            ``success`` is True only once money has actually moved; a charge
            still awaiting confirmation or authentication is a failure.
        """
        pass

    @abstractmethod
    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a previous charge.

        Args:
            payment_intent_id: The charge to refund
            amount: Amount to refund (None = full refund)
            reason: Reason for the refund
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the gateway is reachable and operational."""
        pass
