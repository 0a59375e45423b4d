"""
Database Connection Module
Handles the group order snapshot database using SQLAlchemy's async engine.
"""

import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from group_ordering.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

engine_options = {"echo": settings.debug}
if not settings.database_url.startswith("sqlite"):
    engine_options.update(
        pool_size=5,  # Connection pool size
        max_overflow=10,  # Extra connections when pool is full
    )

engine = create_async_engine(settings.database_url, **engine_options)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def init_db(bind=engine):
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Register models on Base.metadata
    from group_ordering import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created successfully!")
