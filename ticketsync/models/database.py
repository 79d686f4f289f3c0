"""
Database connection and session management.

Uses SQLAlchemy async. The engine is chosen from ``DATABASE_URL``:

- ``sqlite+aiosqlite://`` (default): a local file under ``./data``; the parent
  directory is created on first use
- ``postgresql+asyncpg://``: pooled connections, pre-ping enabled

Plain ``postgresql://`` and ``sqlite://`` URLs are rewritten to their async
drivers.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from ticketsync.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Global singletons - created once, reused until close_db()
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def normalize_database_url(url: str) -> str:
    """Ensure the URL names an async driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def create_engine_for_url(url: str) -> AsyncEngine:
    """Build an async engine with pool settings suited to the backend."""
    db_url = normalize_database_url(url)
    parsed = make_url(db_url)

    if parsed.get_backend_name() == "sqlite":
        database = parsed.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(db_url, echo=False, future=True)
        logger.info("Database engine created for SQLite (%s)", database)
        return engine

    if settings.ENVIRONMENT == "test":
        return create_async_engine(db_url, echo=False, future=True, poolclass=NullPool)

    engine = create_async_engine(
        db_url,
        echo=False,
        future=True,
        pool_size=5,        # Base connections kept warm
        max_overflow=10,    # Up to 15 total under burst load
        pool_recycle=300,   # Recycle connections every 5 min
        pool_pre_ping=True, # Verify connection is alive before checkout
    )
    logger.info(
        "Database engine created with connection pool (%s, pool_size=5, max_overflow=10)",
        parsed.get_backend_name(),
    )
    return engine


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(settings.DATABASE_URL)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to commit
        )
        logger.info("Session factory created")
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    Any uncommitted changes are rolled back on error.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables."""
    # Register models with Base.metadata
    from ticketsync.models import sync_log, ticket  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        pool_status = get_pool_status()
        logger.info(
            "Closing database pool: %s checked_in, %s checked_out",
            pool_status["checked_in"],
            pool_status["checked_out"],
        )
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if not hasattr(pool, "checkedin"):
        return {"pool_type": type(pool).__name__, "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size() if hasattr(pool, "size") else 0,
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow() if hasattr(pool, "overflow") else 0,
    }
