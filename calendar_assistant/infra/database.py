"""
Credential Database

Async SQLAlchemy engine for the provider_credentials table. Built lazily so
processes running on the in-memory credential store never touch Postgres.
Token refreshes are short single-row writes, so a small pool with
pre-ping is enough.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from calendar_assistant.config import settings
from calendar_assistant.models.database import Base

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Return the shared engine, creating it on first use."""
    global _engine, _sessions
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        _sessions = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)
        logger.debug(f"Database engine created (pool_size={settings.db_pool_size})")
    return _engine


@asynccontextmanager
async def get_db_context() -> AsyncIterator[AsyncSession]:
    """
    One unit of work: committed when the block exits cleanly, rolled back
    when it raises.

        async with get_db_context() as db:
            record = (await db.execute(query)).scalar_one_or_none()
    """
    get_engine()
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the credential table (development only)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the pool, if one was created."""
    global _engine, _sessions
    engine, _engine, _sessions = _engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("Database connections closed")


async def check_db_health() -> bool:
    """True if the database answers SELECT 1."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        return False
