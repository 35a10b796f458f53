"""Repository for Home entity database operations.

Besides the inherited CRUD operations, HomeRepository answers the questions the
index synchronization engine needs answered before a home mutation converges:
which devices are attached to a home and which users are linked to it.

Example:
    async with get_session() as session:
        repo = HomeRepository(session)
        devices = await repo.get_attached_devices(home.id)
        user_ids = await repo.get_linked_user_ids(home.id)
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from homesync.models import Device, Home, UserHome
from homesync.repositories.base import Repository

if TYPE_CHECKING:
    from collections.abc import Sequence


class HomeRepository(Repository[Home]):
    """Repository for Home entity database operations."""

    model_class = Home

    async def count_by_organization(self, organization_id: str) -> int:
        """Count the homes owned by an organization.

        Args:
            organization_id: The owning organization's id.

        Returns:
            Number of homes in the organization, enabled or not.
        """
        stmt = select(func.count()).select_from(Home).where(Home.organization_id == organization_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def get_attached_devices(self, home_id: str) -> Sequence[Device]:
        """Get the devices currently attached to a home.

        Args:
            home_id: The home's id.

        Returns:
            Devices whose home_id is the given home, ordered by id.
        """
        stmt = (
            select(Device)
            .where(Device.home_id == home_id)
            .order_by(Device.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def get_attached_devices_by_home(
        self, home_ids: Sequence[str]
    ) -> dict[str, list[Device]]:
        """Get attached devices for several homes in one query.

        Args:
            home_ids: Home ids to look up.

        Returns:
            Mapping of home id to its attached devices. Homes without devices
            map to an empty list.
        """
        grouped: dict[str, list[Device]] = {home_id: [] for home_id in home_ids}
        if not home_ids:
            return grouped

        stmt = (
            select(Device)
            .where(Device.home_id.in_(list(home_ids)))
            .order_by(Device.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        for device in result.scalars().all():
            if device.home_id is not None:
                grouped[device.home_id].append(device)
        return grouped

    async def get_linked_user_ids(self, home_id: str) -> list[str]:
        """Get the ids of users linked to a home."""
        stmt = (
            select(UserHome.user_id)
            .where(UserHome.home_id == home_id)
            .order_by(UserHome.user_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_linked_user_ids_by_home(self, home_ids: Sequence[str]) -> dict[str, list[str]]:
        """Get linked user ids for several homes in one query.

        Returns:
            Mapping of home id to linked user ids; unlinked homes map to [].
        """
        grouped: defaultdict[str, list[str]] = defaultdict(list)
        for home_id in home_ids:
            grouped[home_id] = []
        if not home_ids:
            return dict(grouped)

        stmt = (
            select(UserHome.home_id, UserHome.user_id)
            .where(UserHome.home_id.in_(list(home_ids)))
            .order_by(UserHome.home_id, UserHome.user_id)
        )
        result = await self.session.execute(stmt)
        for home_id, user_id in result.all():
            grouped[home_id].append(user_id)
        return dict(grouped)
