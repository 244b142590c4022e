"""
Database session management for the Berth API server.

One async engine shared by HTTP handlers, stack workers, and the stale
reaper. Request handlers use the get_db() dependency; background tasks open
short-lived sessions with get_db_session() so that each write is committed
(and visible to pollers) as soon as the block exits.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from berth.config import settings
from berth.logging_config import get_logger

logger = get_logger(__name__)

# Created lazily in init_db()
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db() -> None:
    """Initialize database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    logger.info("Initializing database connection")

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )

    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with _engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """Close database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    if _engine is not None:
        logger.info("Closing database connection pool")
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


def _factory() -> async_sessionmaker[AsyncSession]:
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized: call init_db() first")
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession]:
    """
    Dependency that provides a read-write database session.

    Usage:
        @router.post("/webhooks")
        async def create_webhook(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with _factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession]:
    """Context manager for database access outside the request lifecycle.

    Used by stack workers, the reaper, WebSocket handlers and startup code.
    Commits on clean exit, rolls back on error.
    """
    async with _factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_health() -> bool:
    """Check database health for readiness probe."""
    try:
        if _engine is None:
            return False
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False
