"""Database configuration and session management."""

import time
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
import structlog

from credstore.config import settings

logger = structlog.get_logger()


def _engine_options(database_url: str) -> dict:
    """Pool options per driver; SQLite has no connection pool to size."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}

    # statement_cache_size=0 is required for Supabase transaction pooler (pgbouncer)
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "connect_args": {"statement_cache_size": 0},
    }


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_engine_options(settings.DATABASE_URL),
)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


def _database_host(url: str) -> str:
    # Everything before "@" holds the password
    if "@" not in url:
        return "local"
    return url.rsplit("@", 1)[-1].split("/", 1)[0]


async def _ping() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def init_db() -> None:
    """Verify the database is reachable before serving requests.

    Tables are provisioned by the hosted backend's migrations, not here.
    A failure aborts startup with RuntimeError.
    """
    try:
        await _ping()
    except Exception as e:
        logger.critical(
            "Database unreachable at startup",
            database_host=_database_host(settings.DATABASE_URL),
            error_type=type(e).__name__,
        )
        raise RuntimeError(f"Database connection failed: {type(e).__name__}") from e

    logger.info("Database connection verified", database_host=_database_host(settings.DATABASE_URL))


async def check_db_health() -> dict:
    """Round-trip a trivial query and report its latency."""
    start = time.monotonic()
    try:
        await _ping()
    except Exception as e:
        logger.warning("Database health check failed", error_type=type(e).__name__)
        return {"status": "unhealthy", "error": type(e).__name__}

    return {
        "status": "healthy",
        "latency_ms": round((time.monotonic() - start) * 1000, 2),
    }


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session, rolled back if the handler raises."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
