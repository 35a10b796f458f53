"""Index cache backends for the home lookup indices.

The index cache stores named sets of string members, one set per
(index family, key). Two backends implement IndexCacheProtocol:

- RedisIndexCache: Redis sets (SADD / SREM / DEL / SMEMBERS) behind RedisClient
- InMemoryIndexCache: a dict of Python sets, for local runs and tests

Key Layout:
    {prefix}:h-home-id:{home_id}:devices-id              -> device ids
    {prefix}:h-home-uniqueid:{home_unique_id}:devices-uniqueid -> device unique ids
    {prefix}:h-user-id:{user_id}:homes-id                -> enabled home ids

Both backends validate keys the same way and raise IndexConvergenceError on any
failure, so the synchronization engine treats them identically.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from homesync.core.config import get_settings
from homesync.core.exceptions import IndexConvergenceError, InvalidInputError
from homesync.core.logging import get_logger
from homesync.core.redis import init_redis
from homesync.models.enums import IndexFamily

if TYPE_CHECKING:
    from homesync.core.protocols import IndexCacheProtocol
    from homesync.core.redis import RedisClient

logger = get_logger(__name__)

INDEX_KEY_TEMPLATES: dict[IndexFamily, str] = {
    IndexFamily.DEVICE_BY_HOME_ID: "h-home-id:{key}:devices-id",
    IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY: "h-home-uniqueid:{key}:devices-uniqueid",
    IndexFamily.HOME_BY_USER_ID: "h-user-id:{key}:homes-id",
}


def build_index_key(family: IndexFamily, key: str, prefix: str | None = None) -> str:
    """Build the storage key for one index set.

    Args:
        family: Index family the set belongs to
        key: Home id, home unique id or user id (depending on the family)
        prefix: Key namespace; defaults to ``settings.redis_key_prefix``

    Returns:
        Fully qualified storage key

    Raises:
        InvalidInputError: If ``key`` is empty
    """
    if not key:
        raise InvalidInputError(
            f"Empty key for index family {family}",
            field="key",
            value=key,
            constraint="non-empty",
        )
    if prefix is None:
        prefix = get_settings().redis_key_prefix
    return f"{prefix}:{INDEX_KEY_TEMPLATES[family].format(key=key)}"


class RedisIndexCache:
    """Index cache backed by Redis sets.

    Every Redis command maps one-to-one onto an index operation. Redis set
    commands are already idempotent, so retries never over-apply.
    """

    def __init__(self, redis_client: RedisClient, key_prefix: str | None = None):
        self._redis = redis_client
        self._key_prefix = key_prefix if key_prefix is not None else get_settings().redis_key_prefix

    def _key(self, family: IndexFamily, key: str) -> str:
        return build_index_key(family, key, self._key_prefix)

    async def add_member(self, family: IndexFamily, key: str, member: str) -> None:
        storage_key = self._key(family, key)
        try:
            await self._redis.sadd(storage_key, member)
        except (RedisError, RuntimeError, OSError) as e:
            raise IndexConvergenceError(
                f"SADD {storage_key} failed: {e}",
                operation="add_member",
                key=storage_key,
                original_error=e,
            ) from e

    async def remove_member(self, family: IndexFamily, key: str, member: str) -> None:
        storage_key = self._key(family, key)
        try:
            await self._redis.srem(storage_key, member)
        except (RedisError, RuntimeError, OSError) as e:
            raise IndexConvergenceError(
                f"SREM {storage_key} failed: {e}",
                operation="remove_member",
                key=storage_key,
                original_error=e,
            ) from e

    async def delete_key(self, family: IndexFamily, key: str) -> None:
        storage_key = self._key(family, key)
        try:
            await self._redis.delete(storage_key)
        except (RedisError, RuntimeError, OSError) as e:
            raise IndexConvergenceError(
                f"DEL {storage_key} failed: {e}",
                operation="delete_key",
                key=storage_key,
                original_error=e,
            ) from e

    async def list_members(self, family: IndexFamily, key: str) -> set[str]:
        storage_key = self._key(family, key)
        try:
            return await self._redis.smembers(storage_key)
        except (RedisError, RuntimeError, OSError) as e:
            raise IndexConvergenceError(
                f"SMEMBERS {storage_key} failed: {e}",
                operation="list_members",
                key=storage_key,
                original_error=e,
            ) from e


class InMemoryIndexCache:
    """Index cache held in process memory.

    Empty sets are dropped so that, as in Redis, removing the last member of a
    set removes the key.
    """

    def __init__(self, key_prefix: str | None = None):
        self._key_prefix = key_prefix if key_prefix is not None else get_settings().redis_key_prefix
        self._sets: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._sets)

    def _key(self, family: IndexFamily, key: str) -> str:
        return build_index_key(family, key, self._key_prefix)

    def storage_keys(self) -> list[str]:
        """Return the fully qualified keys of all non-empty sets, sorted."""
        return sorted(self._sets)

    async def add_member(self, family: IndexFamily, key: str, member: str) -> None:
        self._sets.setdefault(self._key(family, key), set()).add(member)

    async def remove_member(self, family: IndexFamily, key: str, member: str) -> None:
        storage_key = self._key(family, key)
        members = self._sets.get(storage_key)
        if members is None:
            return
        members.discard(member)
        if not members:
            del self._sets[storage_key]

    async def delete_key(self, family: IndexFamily, key: str) -> None:
        self._sets.pop(self._key(family, key), None)

    async def list_members(self, family: IndexFamily, key: str) -> set[str]:
        return set(self._sets.get(self._key(family, key), ()))


# Global index cache instance
_index_cache: IndexCacheProtocol | None = None


async def get_index_cache() -> IndexCacheProtocol:
    """Get or create the global index cache selected by ``index_cache_backend``.

    The Redis backend connects the global Redis client on first use.

    Returns:
        IndexCacheProtocol implementation
    """
    global _index_cache  # noqa: PLW0603

    if _index_cache is None:
        settings = get_settings()
        if settings.index_cache_backend == "memory":
            _index_cache = InMemoryIndexCache()
        else:
            _index_cache = RedisIndexCache(await init_redis())
        logger.info(f"Index cache initialized with backend={settings.index_cache_backend}")

    return _index_cache


def reset_index_cache() -> None:
    """Reset the global index cache (for testing)."""
    global _index_cache  # noqa: PLW0603
    _index_cache = None
