"""
Database connection management.
Handles async SQLAlchemy engine and session factory creation.
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobrelay.config import Settings, get_settings
from jobrelay.db.models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """
    Create an async database engine.

    SQLite databases get a NullPool and a generous busy timeout so
    concurrent writers wait for the lock instead of failing.

    Args:
        database_url: The database URL.
        settings: Optional settings for pool sizing.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            echo=False,
        )
    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables. Used for local runs and tests; production uses Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")
