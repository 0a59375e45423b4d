"""Small builders shared by the test modules."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from group_ordering.services.group_order import GroupOrderSession, Participant, ParticipantIdentity


async def join_all(session: GroupOrderSession, *names: str) -> list[str]:
    """Join participants one after the other and return their ids."""
    ids = []
    for name in names:
        participant = await session.join(
            ParticipantIdentity(name=name, email=f"{name.lower()}@example.com")
        )
        ids.append(participant.id)
    return ids


def item(price, quantity: int = 1, menu_item_id: str = "dish") -> dict:
    return {
        "menu_item_id": menu_item_id,
        "name": menu_item_id.title(),
        "quantity": quantity,
        "price": price,
    }


def participants(*spent: str) -> list[Participant]:
    """Bare participants in join order with the given spend."""
    start = datetime(2026, 3, 14, 19, 0, tzinfo=timezone.utc)
    return [
        Participant(
            id=f"p{i}",
            name=f"Diner {i}",
            email=None,
            joined_at=start + timedelta(seconds=i),
            spent_amount=Decimal(amount),
        )
        for i, amount in enumerate(spent, start=1)
    ]
