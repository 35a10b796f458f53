"""Generic Repository base class for database access abstraction.

This module provides a type-safe, async-first repository pattern implementation
that works with SQLAlchemy 2.0 models. Model-specific repositories extend it
with the queries the mutation services need to build index snapshots.

Example:
    from homesync.repositories import Repository
    from homesync.models import Home

    class HomeRepository(Repository[Home]):
        model_class = Home

        async def count_by_organization(self, organization_id: str) -> int:
            ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import select

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from homesync.core.database import Base

# Type variable for the model class
# Bound to Base to ensure only SQLAlchemy models can be used
T = TypeVar("T", bound="Base")


class Repository(Generic[T]):  # noqa: UP046
    """Generic repository base class providing common CRUD operations.

    Reads always repopulate instances already present in the session, so a
    service that re-reads rows after acquiring its mutation locks sees the
    committed state rather than a stale identity-map copy.

    Attributes:
        model_class: Class attribute that must be set to the SQLAlchemy model class.
        session: The async database session used for all operations.
    """

    # Subclasses must set this to their model class
    model_class: type[T]

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, entity_id: Any) -> T | None:
        """Retrieve an entity by its primary key.

        Args:
            entity_id: The primary key value of the entity to retrieve.

        Returns:
            The entity if found, None otherwise.
        """
        return await self.session.get(self.model_class, entity_id, populate_existing=True)

    async def get_many(self, entity_ids: Sequence[Any]) -> Sequence[T]:
        """Retrieve multiple entities by their (single-column) primary keys.

        Args:
            entity_ids: A sequence of primary key values to retrieve.

        Returns:
            A sequence of found entities. May contain fewer items than
            entity_ids if some entities don't exist.
        """
        if not entity_ids:
            return []

        pk_column = self._primary_key_column()
        stmt = (
            select(self.model_class)
            .where(pk_column.in_(list(entity_ids)))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def create(self, entity: T) -> T:
        """Add a new entity and flush it.

        Args:
            entity: The entity instance to persist.

        Returns:
            The persisted entity with database-generated values loaded.

        Raises:
            sqlalchemy.exc.IntegrityError: If a unique or foreign key constraint fails.

        Note:
            The entity is flushed but not committed; mutation services commit
            explicitly before converging the index cache.
        """
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity

    async def delete(self, entity: T) -> None:
        """Delete an entity from the database.

        Cascades on links and the SET NULL on attached devices are applied by
        the database (see the passive_deletes relationships on the models).
        """
        await self.session.delete(entity)
        await self.session.flush()

    def _primary_key_column(self) -> Any:
        return list(self.model_class.__table__.primary_key.columns)[0]  # type: ignore[attr-defined]
