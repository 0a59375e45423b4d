"""
SQLAlchemy Database Models

Durable record of every group order session. The live session is held in
memory by the registry; each committed mutation writes its snapshot here so
closed sessions (finalized, expired, cancelled) stay on record after they
are purged from memory. Rows are never deleted.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON
from sqlalchemy.sql import func

from group_ordering.database import Base


class GroupOrderStatus(str, enum.Enum):
    """Group order lifecycle states."""
    CREATED = "created"
    OPEN = "open"
    LOCKED = "locked"
    FINALIZED = "finalized"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class GroupOrderRecord(Base):
    """
    Latest persisted snapshot of one group order.

    ``version`` mirrors the session's commit counter; writes only ever move
    it forward.
    """
    __tablename__ = "group_orders"

    # Primary Key
    id = Column(String(32), primary_key=True)

    # =========================================================================
    # REFERENCES
    # =========================================================================
    restaurant_id = Column(String(64), nullable=False, index=True)
    table_id = Column(String(64), nullable=False, index=True)
    invite_code = Column(String(16), nullable=False, index=True)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    status = Column(
        Enum(GroupOrderStatus),
        default=GroupOrderStatus.OPEN,
        nullable=False,
        index=True
    )
    version = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # SNAPSHOT
    # =========================================================================
    participant_count = Column(Integer, nullable=False, default=0)
    snapshot = Column(JSON, nullable=False)  # full session projection

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<GroupOrderRecord {self.id} - v{self.version} - {self.status.value}>"
