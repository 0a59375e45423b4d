"""
Group Ordering Services

Shared, time-boxed ordering sessions for one table: invite codes,
participants, spending limits, bill splitting and checkout.

Usage:
    from group_ordering.services.group_order import get_registry

    registry = get_registry()
    session = await registry.create("rest_1", "table_7", ttl_minutes=60)
    participant = await session.join(ParticipantIdentity(name="Ana"))
"""

import logging
from functools import lru_cache

from group_ordering.core.config import get_settings
from group_ordering.services.group_order.checkout import CheckoutCoordinator, CheckoutResult
from group_ordering.services.group_order.invite_codes import InviteCodeAuthority
from group_ordering.services.group_order.ledger import (
    OrderLine,
    Participant,
    ParticipantIdentity,
    ParticipantLedger,
    PaymentStatus,
)
from group_ordering.services.group_order.payment_structure import PaymentPlan, PaymentStructure
from group_ordering.services.group_order.registry import GroupOrderRegistry
from group_ordering.services.group_order.session import (
    GroupOrderSession,
    GroupOrderSettings,
    GroupOrderStatus,
)
from group_ordering.services.group_order.spending import SpendingLimits, SpendingStatus
from group_ordering.services.group_order.store import GroupOrderStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_registry() -> GroupOrderRegistry:
    """
    Get the process-wide registry (cached).

    Snapshots are written through to the database unless
    PERSIST_GROUP_ORDERS=false.
    """
    settings = get_settings()
    store = None
    if settings.persist_group_orders:
        from group_ordering.database import async_session_maker
        store = GroupOrderStore(async_session_maker)

    logger.info(f"Group order registry ready (persistence={'on' if store else 'off'})")
    return GroupOrderRegistry(settings=settings, store=store)


def reset_registry() -> None:
    """Drop the cached registry and every in-memory session with it."""
    get_registry.cache_clear()


__all__ = [
    "get_registry",
    "reset_registry",
    "CheckoutCoordinator",
    "CheckoutResult",
    "GroupOrderRegistry",
    "GroupOrderSession",
    "GroupOrderSettings",
    "GroupOrderStatus",
    "GroupOrderStore",
    "InviteCodeAuthority",
    "OrderLine",
    "Participant",
    "ParticipantIdentity",
    "ParticipantLedger",
    "PaymentPlan",
    "PaymentStatus",
    "PaymentStructure",
    "SpendingLimits",
    "SpendingStatus",
]
