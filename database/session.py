"""
Async engine and unit-of-work sessions for the staging database.

PostgreSQL in production (advisory locks available), SQLite for dev/tests.
URLs in settings use the plain scheme; the async driver is filled in:

  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

Usage:
    await init_db()                       # create tables at startup
    async with get_session() as db:       # one transaction; commit on exit
        await db.execute(...)
    await close_db()                      # dispose the pool at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_SCHEMES = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None
_url_override: Optional[str] = None


def _to_async_url(db_url: str) -> str:
    for plain, driver in _ASYNC_SCHEMES:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def safe_url(url) -> str:
    """URL without credentials, for logs and script output."""
    url = str(url)
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://{rest.split('@', 1)[1]}"


def configure_database(url: Optional[str]) -> None:
    """Point the engine at a specific URL instead of settings (tests, scripts)."""
    global _url_override
    _url_override = url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    db_url = _to_async_url(_url_override or settings.database.url)
    if db_url.startswith("sqlite"):
        # One file, one writer; pooling buys nothing
        _engine = create_async_engine(
            db_url, echo=settings.debug, connect_args={"check_same_thread": False},
        )
    else:
        _engine = create_async_engine(
            db_url,
            echo=settings.debug,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    logger.info("database_engine_created", dialect=_engine.dialect.name, url=safe_url(_engine.url))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on clean exit, roll back on any exception."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def list_tables(conn: AsyncConnection) -> list[str]:
    """Tables that exist in the connected database."""
    if conn.dialect.name == "postgresql":
        stmt = text("SELECT tablename FROM pg_tables WHERE schemaname = current_schema()")
    else:
        stmt = text("SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'")
    result = await conn.execute(stmt)
    return sorted(row[0] for row in result)


async def init_db() -> None:
    """Create the staging and field-id cache tables if absent."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
