"""Pytest configuration and shared fixtures.

This module provides shared fixtures for all homesync tests:
- isolated_settings (autouse): settings built from a clean environment, with the
  in-memory index cache backend and a per-test log file; module-level
  singletons are reset around every test
- index_cache: an empty InMemoryIndexCache
- sync_engine: an IndexSyncEngine writing to ``index_cache``
- db_session: an AsyncSession on a temporary sqlite+aiosqlite database
- seed: helper that persists factory-built model instances
- organization / other_organization: two seeded organizations
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from homesync.core.config import get_settings
from homesync.core.database import close_db, get_session, get_session_factory, init_db
from homesync.services.index_cache import InMemoryIndexCache, reset_index_cache
from homesync.services.index_sync import IndexSyncEngine, reset_index_sync_engine
from homesync.services.mutation import reset_mutation_locks
from homesync.tests.factories import OrganizationFactory

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable, Generator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from homesync.models import Organization

# Environment variables that would leak a developer's configuration into tests
_SETTINGS_ENV_VARS = [
    "DATABASE_URL",
    "REDIS_URL",
    "REDIS_KEY_PREFIX",
    "INDEX_CACHE_BACKEND",
    "INDEX_FANOUT_CONCURRENCY",
    "REDIS_MAX_CONNECTIONS",
    "REDIS_POOL_TIMEOUT_SECONDS",
    "INDEX_LOCK_TIMEOUT_SECONDS",
    "LOG_LEVEL",
    "LOG_JSON",
]


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path) -> Generator[None]:
    """Isolate settings and reset module-level singletons for each test."""
    for var in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HSYNC_RUNTIME_ENV_PATH", str(tmp_path / "runtime.env"))
    monkeypatch.setenv("LOG_FILE_PATH", str(tmp_path / "logs" / "homesync.log"))
    monkeypatch.setenv("INDEX_CACHE_BACKEND", "memory")

    get_settings.cache_clear()
    reset_index_cache()
    reset_index_sync_engine()
    reset_mutation_locks()
    yield
    get_settings.cache_clear()
    reset_index_cache()
    reset_index_sync_engine()
    reset_mutation_locks()


@pytest.fixture
def index_cache() -> InMemoryIndexCache:
    """Create an empty in-memory index cache."""
    return InMemoryIndexCache()


@pytest.fixture
def sync_engine(index_cache: InMemoryIndexCache) -> IndexSyncEngine:
    """Create a synchronization engine over the in-memory index cache."""
    return IndexSyncEngine(index_cache)


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """Initialize a temporary SQLite database and yield its session factory.

    A file database is used (rather than ``:memory:``) so that every
    connection in the pool sees the same data.
    """
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'homesync.db'}")
    try:
        yield get_session_factory()
    finally:
        await close_db()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession]:
    """Provide a session on the temporary database."""
    async with get_session() as session:
        yield session


@pytest.fixture
def seed(db_session: AsyncSession) -> Callable[..., Awaitable[None]]:
    """Persist model instances and commit.

    Usage:
        await seed(HomeFactory(organization_id=org.id), UserFactory(...))
    """

    async def _seed(*entities: Any) -> None:
        db_session.add_all(entities)
        await db_session.commit()

    return _seed


@pytest.fixture
async def organization(seed) -> Organization:
    org = OrganizationFactory(id="org-1", name="Acme Homes")
    await seed(org)
    return org


@pytest.fixture
async def other_organization(seed) -> Organization:
    org = OrganizationFactory(id="org-2", name="Other Homes")
    await seed(org)
    return org
