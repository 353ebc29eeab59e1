"""PostgreSQL database connection and session management using async SQLAlchemy.

This module provides async database connectivity for the recommendation
serving core: the rating/watchlist/preference event store and the bandit
experiment log both live here.

Usage:
    from recserve.database import get_db_context, init_db, check_postgres_connection

    # Initialize tables on startup
    await init_db()

    # Check connection health
    connected = await check_postgres_connection()

    # Use outside of request handlers
    async with get_db_context() as db:
        result = await db.execute(select(RatingEvent))
"""

import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from sqlalchemy.pool import NullPool

from recserve.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy ORM models."""
    pass


# Global engine and session factory - initialized lazily
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> str:
    """Construct the async connection URL from settings.

    DATABASE_URL wins when set; otherwise the postgres_* settings are
    assembled into an asyncpg URL.

    Returns:
        Async SQLAlchemy connection string
    """
    if settings.database_url:
        return settings.database_url
    return (
        f"postgresql+asyncpg://{settings.postgres_user}:{settings.postgres_password}"
        f"@{settings.postgres_host}:{settings.postgres_port}/{settings.postgres_db}"
    )


def get_engine() -> AsyncEngine:
    """Get or create the async database engine.

    Returns:
        AsyncEngine instance
    """
    global _engine

    if _engine is None:
        database_url = get_database_url()

        pool_kwargs = {}
        if settings.postgres_pool_size > 0 and database_url.startswith("postgresql"):
            pool_kwargs = {
                "pool_size": settings.postgres_pool_size,
                "max_overflow": settings.postgres_max_overflow,
                "pool_timeout": settings.postgres_pool_timeout,
                "pool_recycle": settings.postgres_pool_recycle,
                "pool_pre_ping": True,  # Verify connections before use
            }
        else:
            # Use NullPool for testing or single-connection scenarios
            pool_kwargs = {"poolclass": NullPool}

        _engine = create_async_engine(
            database_url,
            echo=settings.postgres_echo_sql,
            **pool_kwargs,
        )

        logger.info(
            f"Database engine created: {settings.postgres_host}:{settings.postgres_port}/{settings.postgres_db}"
        )

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory.

    Returns:
        async_sessionmaker configured for the database engine
    """
    global _async_session_factory

    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _async_session_factory


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional session scope: commits on success, rolls back on error.

    Args:
        session_factory: Factory to open the session with. Defaults to the
            process-wide factory.
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database sessions.

    Usage:
        async with get_db_context() as db:
            result = await db.execute(select(Model))
    """
    async with session_scope() as session:
        yield session


async def init_db() -> None:
    """Initialize database tables.

    Creates all tables defined in db_models.py if they don't exist.
    Safe to call multiple times.
    """
    # Import models to register them with Base.metadata
    from recserve import db_models  # noqa: F401

    engine = get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables initialized")


async def check_postgres_connection() -> bool:
    """Check if the database is connected and responsive.

    Returns:
        True if connected, False otherwise
    """
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


async def close_db() -> None:
    """Close database connections and dispose of the engine.

    Call this on application shutdown to cleanly close all connections.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
