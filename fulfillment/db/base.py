"""Declarative base and the per-process engine and session factory.

Each worker process and the ops API call ``init_db`` once at startup. The
schema itself is owned by Alembic.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from fulfillment.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str) -> AsyncEngine:
    """Async engine for ``url``; pool sizing applies to server databases only."""
    settings = get_settings()
    options = {"echo": settings.debug, "pool_pre_ping": True}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    return create_async_engine(url, **options)


async def init_db(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the process-wide engine and session factory (idempotent)."""
    global _engine, _session_factory

    if _session_factory is None:
        _engine = build_engine(url or get_settings().database_url)
        # Rows are read after commit when building outgoing events
        _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def create_tables() -> None:
    """Create every table on the initialized engine, for local runs against an empty database."""
    import fulfillment.db.models  # noqa: F401

    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
