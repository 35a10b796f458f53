"""Protocol definitions for service interfaces.

This module defines Protocol classes for structural subtyping, enabling type-safe
interface definitions without requiring explicit inheritance.

Protocol Definitions:
    - IndexCacheProtocol: The four set operations the synchronization engine needs
      from an index cache backend.

Usage:
    Backends don't need to inherit from these protocols. They are structural
    subtypes if they implement the required methods.

    async def rebuild(cache: IndexCacheProtocol) -> None:
        await cache.delete_key(IndexFamily.DEVICE_BY_HOME_ID, home_id)

See Also:
    - homesync/services/index_cache.py - RedisIndexCache and InMemoryIndexCache
    - homesync/services/index_sync.py - IndexSyncEngine, the only consumer
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from homesync.models.enums import IndexFamily


@runtime_checkable
class IndexCacheProtocol(Protocol):
    """Protocol for index cache backends (named sets of string members).

    Every operation is idempotent: adding a present member, removing an absent
    member and deleting an absent key all succeed as no-ops. An empty set is
    indistinguishable from an absent key.

    Failures are raised as ``IndexConvergenceError``; callers only interpret
    them as success or failure.
    """

    async def add_member(self, family: IndexFamily, key: str, member: str) -> None:
        """Add ``member`` to the set ``family[key]``."""
        ...

    async def remove_member(self, family: IndexFamily, key: str, member: str) -> None:
        """Remove ``member`` from the set ``family[key]``."""
        ...

    async def delete_key(self, family: IndexFamily, key: str) -> None:
        """Delete the whole set ``family[key]``."""
        ...

    async def list_members(self, family: IndexFamily, key: str) -> set[str]:
        """Return the members of ``family[key]`` (empty when absent)."""
        ...
