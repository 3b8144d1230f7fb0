"""
Database engine and session factories (SQLAlchemy async)

Stores open one short-lived session per operation from a session factory,
so every factory here is built with ``expire_on_commit=False``: objects
returned by a store stay readable after their session is closed.
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Async engine for ``database_url`` (default: settings.DATABASE_URL)"""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=False,
        poolclass=NullPool,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def is_connected(session: AsyncSession) -> bool:
    """Round-trip a trivial query; False (and logged) when the database is unreachable"""
    try:
        await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")
        return False


# Process-wide defaults used by the API
engine = create_engine()
async_session_maker = create_session_factory(engine)
