"""SQLAlchemy async engine and session management.

Provides a factory for creating async engines (SQLite via aiosqlite by
default, PostgreSQL via asyncpg), an async context manager for scoped
sessions, and lifecycle helpers for schema creation and shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from .models import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton (set via ``init_engine``)
# ---------------------------------------------------------------------------
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
    echo: bool = False,
    use_null_pool: bool = False,
) -> AsyncEngine:
    """Create and return a new SQLAlchemy :class:`AsyncEngine`.

    Args:
        url: Database connection URL (``sqlite+aiosqlite://`` or
            ``postgresql+asyncpg://``).
        pool_size: Persistent connections to keep (server databases only).
        max_overflow: Additional connections beyond *pool_size*.
        pool_recycle: Seconds after which a connection is recycled.
        echo: If ``True``, log all emitted SQL statements.
        use_null_pool: If ``True``, disable connection pooling entirely.

    Returns:
        A configured :class:`AsyncEngine` instance.
    """
    parsed = make_url(url)
    pool_kwargs: dict = {}
    if parsed.get_backend_name() == "sqlite":
        database = parsed.database or ""
        if database in ("", ":memory:"):
            # One shared connection, otherwise every session sees an empty db
            pool_kwargs.update(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    elif use_null_pool:
        pool_kwargs["poolclass"] = NullPool
    else:
        pool_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
        )

    engine = create_async_engine(url, echo=echo, **pool_kwargs)
    logger.info("Created async engine for %s", url.split("@")[-1])
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_engine(
    url: str,
    *,
    echo: bool = False,
    create_tables: bool = True,
) -> async_sessionmaker[AsyncSession]:
    """Initialise the module-level engine and session factory.

    This is the primary entry-point at application startup.

    Args:
        url: Database connection URL.
        echo: SQL echo flag.
        create_tables: If ``True``, run ``CREATE TABLE IF NOT EXISTS`` for
            all ORM models on startup.

    Returns:
        The initialised session factory.
    """
    global _engine, _session_factory  # noqa: PLW0603

    _engine = create_engine(url, echo=echo)
    _session_factory = create_session_factory(_engine)

    if create_tables:
        await create_all(_engine)

    return _session_factory


async def create_all(engine: AsyncEngine | None = None) -> None:
    """Create all tables defined in the ORM metadata.

    Raises:
        RuntimeError: If no engine is available.
    """
    eng = engine or _engine
    if eng is None:
        raise RuntimeError(
            "No engine available. Call init_engine() first or pass an engine."
        )

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified.")


async def dispose() -> None:
    """Dispose of the module-level engine and release all pooled connections."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        await _engine.dispose()
        logger.info("Engine disposed.")
        _engine = None
        _session_factory = None


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield an async session scoped to the caller's block.

    Usage::

        async with session_scope(factory) as session:
            repo = IncomingPositionRepo(session)
            ...

    The session is committed on successful exit and rolled back on
    exception. It is always closed afterwards.

    Raises:
        RuntimeError: If no factory is given and :func:`init_engine` has not
            been called.
    """
    maker = factory or _session_factory
    if maker is None:
        raise RuntimeError(
            "Session factory not initialised. Call init_engine() first."
        )

    session = maker()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
