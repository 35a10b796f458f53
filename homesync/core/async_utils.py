"""Async utility functions for concurrent index writes and mutation serialization.

This module provides:

- bounded_gather: asyncio.gather with a concurrency limit that keeps results
  (and exceptions, when requested) in input order
- KeyedLock: per-key asyncio locks, acquired in sorted order so that mutations
  touching overlapping homes/users serialize without deadlocking

Usage:
    from homesync.core.async_utils import KeyedLock, bounded_gather

    results = await bounded_gather(
        [cache.add_member(family, key, m) for m in members],
        limit=50,
        return_exceptions=True,
    )

    locks = KeyedLock()
    async with locks.hold(["home:h1", "user:u1"], timeout=10.0):
        ...
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Iterable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from homesync.core.exceptions import LockTimeoutError
from homesync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def bounded_gather(  # noqa: UP047 - Using TypeVar for broader compatibility
    coros: list[Awaitable[T]],
    *,
    limit: int = 10,
    return_exceptions: bool = False,
) -> list[T | BaseException]:
    """Execute awaitables concurrently with a limit on parallelism.

    Similar to asyncio.gather but limits the number of concurrent tasks
    using a semaphore. Results are returned in the same order as input.

    Args:
        coros: List of awaitables to execute
        limit: Maximum number of concurrent tasks (default: 10)
        return_exceptions: If True, exceptions are returned in place of results
            instead of being raised

    Returns:
        List of results (or exceptions) in the same order as input awaitables

    Raises:
        Exception: The first exception if return_exceptions=False
    """
    if not coros:
        return []

    semaphore = asyncio.Semaphore(limit)

    async def with_semaphore(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    # asyncio.gather preserves input order, including for returned exceptions
    return list(
        await asyncio.gather(
            *(with_semaphore(coro) for coro in coros),
            return_exceptions=return_exceptions,
        )
    )


class KeyedLock:
    """Lazily created asyncio locks keyed by string.

    Locks are process-local. They serialize the "relational write + index
    converge" sequence of concurrent mutations that share a home or user key
    within one event loop.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._holders: defaultdict[str, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        keys: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[list[str]]:
        """Acquire the locks for ``keys`` and release them on exit.

        Keys are de-duplicated and acquired in sorted order.

        Args:
            keys: Lock keys, e.g. ``home:<id>`` or ``user:<id>``
            timeout: Seconds to wait for all locks; None waits forever

        Yields:
            The sorted list of keys that are held

        Raises:
            LockTimeoutError: If the locks could not be acquired in time
        """
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            try:
                async with asyncio.timeout(timeout):
                    for key in ordered:
                        self._holders[key] += 1
                        try:
                            await self._locks[key].acquire()
                        except BaseException:
                            self._release_holder(key)
                            raise
                        acquired.append(key)
            except TimeoutError as e:
                logger.warning(
                    f"Timed out after {timeout}s waiting for locks {ordered}",
                    extra={"lock_keys": ordered, "timeout_seconds": timeout},
                )
                raise LockTimeoutError(lock_keys=ordered, timeout_seconds=timeout) from e
            yield ordered
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_holder(key)

    def _release_holder(self, key: str) -> None:
        # Drop idle locks so the registry does not grow with every home ever touched
        self._holders[key] -= 1
        if self._holders[key] <= 0:
            self._holders.pop(key, None)
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                self._locks.pop(key, None)


def home_lock_key(home_id: Any) -> str:
    return f"home:{home_id}"


def user_lock_key(user_id: Any) -> str:
    return f"user:{user_id}"


def device_lock_key(device_id: Any) -> str:
    return f"device:{device_id}"
