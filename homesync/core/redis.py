"""Redis client backing the index cache.

RedisClient owns one blocking connection pool and exposes only the commands the
index cache issues (SADD, SREM, SMEMBERS, DEL). When every pooled connection is
busy, a command waits up to ``redis_pool_timeout_seconds`` for one to free up.
Responses are decoded to ``str`` so set members round-trip as the ids that were
written.

Startup connects with exponential backoff; after that, command errors
propagate to the caller (RedisIndexCache turns them into
IndexConvergenceError).
"""

import asyncio
import contextlib
import random
from typing import Any, cast

from redis.asyncio import BlockingConnectionPool, Redis
from redis.exceptions import ConnectionError, TimeoutError

from homesync.core.config import get_settings
from homesync.core.logging import get_logger

logger = get_logger(__name__)

CONNECT_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 30.0
BACKOFF_JITTER = 0.25


class RedisClient:
    """Pooled async Redis connection with set-command helpers."""

    def __init__(self, redis_url: str | None = None):
        """Create an unconnected client.

        Args:
            redis_url: Redis connection URL; defaults to ``settings.redis_url``
        """
        self._redis_url = redis_url or get_settings().redis_url
        self._pool: BlockingConnectionPool | None = None
        self._client: Redis | None = None
        self._max_retries = CONNECT_ATTEMPTS
        self._base_delay = BACKOFF_BASE_SECONDS
        self._max_delay = BACKOFF_CAP_SECONDS
        self._jitter_factor = BACKOFF_JITTER

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before connection attempt ``attempt + 1``."""
        delay: float = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        return delay * (1 + random.uniform(0, self._jitter_factor))  # noqa: S311

    async def connect(self) -> None:
        """Open the pool and verify it with PING, retrying with backoff.

        Raises:
            redis.exceptions.ConnectionError: If every attempt fails
            redis.exceptions.TimeoutError: If every attempt times out
        """
        for attempt in range(1, self._max_retries + 1):
            try:
                settings = get_settings()
                self._pool = BlockingConnectionPool.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                    health_check_interval=30,
                    max_connections=settings.redis_max_connections,
                    timeout=settings.redis_pool_timeout_seconds,
                )
                self._client = Redis(connection_pool=self._pool)
                await self._client.ping()  # type: ignore
                logger.info("Connected to Redis index cache")
                return
            except (ConnectionError, TimeoutError) as e:
                if attempt == self._max_retries:
                    logger.error(f"Giving up on Redis after {attempt} attempts: {e}")
                    raise
                delay = self._calculate_backoff_delay(attempt)
                logger.warning(
                    f"Redis connection attempt {attempt}/{self._max_retries} failed: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    async def disconnect(self) -> None:
        """Close the client and its pool; errors during shutdown are ignored."""
        with contextlib.suppress(Exception):
            if self._client:
                await self._client.aclose()
                self._client = None
            if self._pool:
                await self._pool.disconnect()
                self._pool = None
            logger.info("Redis connection closed")

    def _ensure_connected(self) -> Redis:
        if not self._client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> dict[str, Any]:
        """Report whether Redis answers PING, and its server version."""
        try:
            client = self._ensure_connected()
            await client.ping()  # type: ignore
            info = await client.info("server")  # type: ignore
        except Exception as e:
            return {"status": "unhealthy", "connected": False, "error": str(e)}
        return {
            "status": "healthy",
            "connected": True,
            "redis_version": info.get("redis_version", "unknown"),
        }

    # Set commands used by RedisIndexCache

    async def sadd(self, key: str, *members: str) -> int:
        """SADD; returns how many members were not already present."""
        client = self._ensure_connected()
        return cast("int", await client.sadd(key, *members))  # type: ignore[misc]

    async def srem(self, key: str, *members: str) -> int:
        """SREM; returns how many members were present and removed."""
        client = self._ensure_connected()
        return cast("int", await client.srem(key, *members))  # type: ignore[misc]

    async def smembers(self, key: str) -> set[str]:
        """SMEMBERS; a missing key reads as the empty set."""
        client = self._ensure_connected()
        return set(cast("set[str]", await client.smembers(key)))  # type: ignore[misc]

    async def delete(self, *keys: str) -> int:
        """DEL; returns how many of ``keys`` existed."""
        client = self._ensure_connected()
        return cast("int", await client.delete(*keys))


# Global Redis client instance
_redis_client: RedisClient | None = None


async def init_redis() -> RedisClient:
    """Get the global Redis client, connecting it on first use."""
    global _redis_client  # noqa: PLW0603

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis() -> None:
    """Disconnect and drop the global Redis client."""
    global _redis_client  # noqa: PLW0603

    if _redis_client:
        await _redis_client.disconnect()
        _redis_client = None
