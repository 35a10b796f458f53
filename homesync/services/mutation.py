"""Shared plumbing for the organization-scoped mutation services.

Every mutation entry point follows the same sequence:

1. Verify that referenced ids exist (ResourceNotFoundError) and belong to the
   caller's organization (AuthorizationError).
2. Acquire the per-home / per-user keyed locks for everything whose index
   entries the mutation changes.
3. Re-read fresh state, perform the relational write, flush (an IntegrityError
   is rolled back and raised as DuplicateResourceError) and commit.
4. Await full index convergence and return a MutationResult carrying both the
   relational result and the ConvergenceReport.

Steps 1-3 fail closed. Step 4 never raises: a convergence failure is logged by
the engine and surfaced through ``MutationResult.convergence``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy.exc import IntegrityError

from homesync.core.async_utils import (
    KeyedLock,
    device_lock_key,
    home_lock_key,
    user_lock_key,
)
from homesync.core.config import get_settings
from homesync.core.exceptions import (
    AuthorizationError,
    DuplicateResourceError,
    InvalidInputError,
    ResourceNotFoundError,
)
from homesync.core.logging import get_logger, log_context
from homesync.repositories import (
    DeviceRepository,
    HomeRepository,
    UserHomeRepository,
    UserRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from homesync.repositories.base import Repository
    from homesync.services.index_sync import ConvergenceReport, IndexSyncEngine

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class MutationResult(Generic[T]):  # noqa: UP046
    """Relational result of a committed mutation plus its index convergence report."""

    value: T
    convergence: ConvergenceReport

    @property
    def converged(self) -> bool:
        return self.convergence.converged


# Global lock registry shared by all services in this process
_mutation_locks: KeyedLock | None = None


def get_mutation_locks() -> KeyedLock:
    """Get or create the process-wide keyed lock registry."""
    global _mutation_locks  # noqa: PLW0603

    if _mutation_locks is None:
        _mutation_locks = KeyedLock()

    return _mutation_locks


def reset_mutation_locks() -> None:
    """Reset the global lock registry (for testing)."""
    global _mutation_locks  # noqa: PLW0603
    _mutation_locks = None


def require_identifier(field: str, value: str | None) -> str:
    """Reject empty identifiers before they reach the store or an index key."""
    if value is None or not value.strip():
        raise InvalidInputError(
            f"{field} must not be empty",
            field=field,
            value=value,
            constraint="non-empty",
        )
    return value


def unique_ids(ids: Iterable[str]) -> list[str]:
    """De-duplicate ids, keeping first-seen order."""
    return list(dict.fromkeys(ids))


class OrganizationScopedService:
    """Base class for services that mutate one organization's homes, devices and users.

    Attributes:
        session: Async session the relational writes run in
        organization_id: Caller's organization; every referenced entity must belong to it
        engine: Index synchronization engine awaited after each commit
        locks: Keyed lock registry serializing mutations on the same home/user
    """

    def __init__(
        self,
        session: AsyncSession,
        organization_id: str,
        engine: IndexSyncEngine,
        *,
        locks: KeyedLock | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self.session = session
        self.organization_id = organization_id
        self.engine = engine
        self.locks = locks if locks is not None else get_mutation_locks()
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else get_settings().index_lock_timeout_seconds
        )
        self.homes = HomeRepository(session)
        self.devices = DeviceRepository(session)
        self.users = UserRepository(session)
        self.links = UserHomeRepository(session)

    @asynccontextmanager
    async def _hold(
        self,
        *,
        home_ids: Iterable[str | None] = (),
        user_ids: Iterable[str] = (),
        device_ids: Iterable[str] = (),
    ) -> AsyncIterator[list[str]]:
        keys = [home_lock_key(home_id) for home_id in home_ids if home_id is not None]
        keys.extend(user_lock_key(user_id) for user_id in user_ids)
        keys.extend(device_lock_key(device_id) for device_id in device_ids)
        with log_context(organization_id=self.organization_id):
            async with self.locks.hold(keys, timeout=self.lock_timeout) as held:
                yield held

    async def _load_scoped(
        self,
        repository: Repository[Any],
        ids: Sequence[str],
        resource_type: str,
    ) -> list[Any]:
        """Load entities by id, enforcing existence and organization scope.

        Args:
            repository: Repository of the entity type
            ids: Ids to load (duplicates are ignored)
            resource_type: Name used in error messages ("home", "user", ...)

        Returns:
            The entities in the order of ``ids``

        Raises:
            ResourceNotFoundError: If any id does not exist
            AuthorizationError: If any entity belongs to another organization
        """
        wanted = unique_ids(ids)
        entities = {entity.id: entity for entity in await repository.get_many(wanted)}

        missing = [entity_id for entity_id in wanted if entity_id not in entities]
        if missing:
            raise ResourceNotFoundError(resource_type, missing[0], details={"missing_ids": missing})

        foreign = [
            entity_id
            for entity_id in wanted
            if entities[entity_id].organization_id != self.organization_id
        ]
        if foreign:
            logger.warning(
                f"Organization {self.organization_id} denied access to {resource_type}s {foreign}",
                extra={"organization_id": self.organization_id, "resource_type": resource_type},
            )
            raise AuthorizationError(
                f"{resource_type.title()}s outside organization scope: {', '.join(foreign)}",
                resource_type=resource_type,
                resource_ids=foreign,
                organization_id=self.organization_id,
            )

        return [entities[entity_id] for entity_id in wanted]

    async def _load_one_scoped(
        self, repository: Repository[Any], entity_id: str, resource_type: str
    ) -> Any:
        return (await self._load_scoped(repository, [entity_id], resource_type))[0]

    async def _reload(self, repository: Repository[Any], entity_id: str, resource_type: str) -> Any:
        """Re-read an entity after acquiring locks; it may have been deleted meanwhile."""
        entity = await repository.get_by_id(entity_id)
        if entity is None:
            raise ResourceNotFoundError(resource_type, entity_id)
        return entity

    @asynccontextmanager
    async def _conflicts_as(
        self, resource_type: str, field: str, value: str
    ) -> AsyncIterator[None]:
        """Translate constraint violations raised by flushes inside the block.

        Raises:
            DuplicateResourceError: If a flush violates a unique or foreign key
                constraint; the transaction is rolled back first
        """
        try:
            yield
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                f"Constraint violation writing {resource_type} {field}={value!r}",
                extra={"resource_type": resource_type, "field": field},
            )
            raise DuplicateResourceError(resource_type, field=field, value=value) from e
