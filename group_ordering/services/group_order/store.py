"""
Group Order Store

Write-through persistence of session snapshots.

Sessions publish a snapshot after every committed mutation, outside their
lock, so two snapshots of the same session can reach the database out of
order. ``save`` therefore updates a row only when the incoming version is
newer than the stored one; a late, older snapshot is dropped.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from group_ordering.models import GroupOrderRecord, GroupOrderStatus

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class GroupOrderStore:
    """
    Snapshot persistence backed by SQLAlchemy's async session.

    Example:
        >>> store = GroupOrderStore(async_session_maker)
        >>> await store.save(session.snapshot())
        >>> snapshot = await store.load(session.id)
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @staticmethod
    def _columns(snapshot: dict) -> dict:
        return {
            "restaurant_id": snapshot["restaurant_id"],
            "table_id": snapshot["table_id"],
            "invite_code": snapshot["invite_code"],
            "status": GroupOrderStatus(snapshot["status"]),
            "version": snapshot["version"],
            "expires_at": _parse_timestamp(snapshot["expires_at"]),
            "closed_at": _parse_timestamp(snapshot.get("closed_at")),
            "participant_count": len(snapshot.get("participants", [])),
            "snapshot": snapshot,
        }

    async def _update_if_newer(self, db: AsyncSession, snapshot: dict) -> bool:
        result = await db.execute(
            update(GroupOrderRecord)
            .where(
                GroupOrderRecord.id == snapshot["id"],
                GroupOrderRecord.version < snapshot["version"],
            )
            .values(**self._columns(snapshot))
        )
        return result.rowcount > 0

    async def save(self, snapshot: dict) -> bool:
        """
        Persist a snapshot unless a newer version is already stored.

        Returns:
            bool: True if the row was inserted or updated
        """
        group_order_id = snapshot["id"]

        async with self._session_maker() as db:
            if await self._update_if_newer(db, snapshot):
                await db.commit()
                return True

            exists = await db.scalar(
                select(GroupOrderRecord.id).where(GroupOrderRecord.id == group_order_id)
            )
            if exists is not None:
                logger.debug(
                    f"Skipped stale snapshot v{snapshot['version']} of group order {group_order_id}"
                )
                return False

            db.add(GroupOrderRecord(id=group_order_id, **self._columns(snapshot)))
            try:
                await db.commit()
                return True
            except IntegrityError:
                # Another writer inserted first; fall back to the guarded update
                await db.rollback()
                saved = await self._update_if_newer(db, snapshot)
                await db.commit()
                return saved

    async def load(self, group_order_id: str) -> Optional[dict]:
        """Return the latest stored snapshot, or None."""
        async with self._session_maker() as db:
            record = await db.get(GroupOrderRecord, group_order_id)
            return dict(record.snapshot) if record else None

    async def count(self, status: Optional[GroupOrderStatus] = None) -> int:
        async with self._session_maker() as db:
            query = select(func.count(GroupOrderRecord.id))
            if status is not None:
                query = query.where(GroupOrderRecord.status == status)
            return (await db.execute(query)).scalar() or 0

    async def health_check(self) -> bool:
        """Verify the database answers a trivial query."""
        try:
            async with self._session_maker() as db:
                await db.execute(select(1))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
