"""
Payment Service Factory

Single entry point for obtaining the payment gateway used by group checkout.

Usage:
    from group_ordering.services.payment import get_payment_service

    # MockPaymentService or StripePaymentService depending on ENV_MODE
    payment_service = get_payment_service()
    result = await payment_service.process_payment(18.50)

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)
"""

import logging
from functools import lru_cache

from group_ordering.core.config import get_settings
from group_ordering.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)
from group_ordering.services.payment.mock import MockPaymentService
from group_ordering.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment service instance (cached).

    Raises:
        ValueError: Outside development mode when STRIPE_SECRET_KEY is unset
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            failure_rate=settings.mock_payment_failure_rate,
            min_latency=settings.mock_payment_min_latency,
            max_latency=settings.mock_payment_max_latency,
        )

    logger.info(
        f"Payment Service: Using StripePaymentService "
        f"({settings.env_mode.value} mode)"
    )
    return StripePaymentService()


def reset_payment_service() -> None:
    """Clear the cached instance; the next call builds a fresh one."""
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "PaymentResult",
    "RefundResult",
    "MockPaymentService",
    "StripePaymentService",
]
