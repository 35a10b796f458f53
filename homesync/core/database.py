"""Async SQLAlchemy engine and sessions for the relational store of record.

Homes, devices, users and their links live here; the index cache is derived
from this state. PostgreSQL (asyncpg) is the deployment target, and
sqlite+aiosqlite serves local runs and the test suite.

Mutation services commit explicitly before they converge the index cache, so
sessions are created with ``expire_on_commit=False``: committed rows stay
readable while the engine builds its snapshots.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from homesync.core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by every homesync model."""

    pass


_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory created by init_db().

    Raises:
        RuntimeError: If init_db() has not run yet
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_factory


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    # ON DELETE CASCADE / SET NULL on links and devices only fire with this pragma
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def init_db(database_url: str | None = None) -> None:
    """Create the engine and session factory, then create missing tables.

    Args:
        database_url: Overrides ``settings.database_url`` (tests pass a
            temporary sqlite+aiosqlite URL)
    """
    global _engine, _async_session_factory  # noqa: PLW0603

    settings = get_settings()
    url = database_url or settings.database_url

    if _is_sqlite(url):
        _engine = create_async_engine(url, echo=settings.debug)
        event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_async_engine(
            url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # Registers every table on Base.metadata before create_all
    from homesync.models import Device, Home, Organization, User, UserHome  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine's connections and forget the session factory."""
    global _engine, _async_session_factory  # noqa: PLW0603

    if _engine is not None:
        try:
            await _engine.dispose()
        finally:
            _engine = None
            _async_session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Open a session; roll back if the block raises.

    Nothing is committed on exit. Each mutation service commits its own
    relational write before converging the index cache.

    Usage:
        async with get_session() as session:
            service = HomeService(session, organization_id, engine)
            await service.disable_homes([home_id])
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
