"""Device mutations and their index convergence.

Devices only appear in the indices of the home they are attached to, and only
while that home is enabled. Moving, renaming or deleting a device updates the
affected home's sets member by member.
"""

from __future__ import annotations

import uuid

from homesync.core.exceptions import InvalidInputError
from homesync.core.logging import get_logger
from homesync.models import Device
from homesync.services.index_sync import DeviceRef, HomeSnapshot
from homesync.services.mutation import (
    MutationResult,
    OrganizationScopedService,
    require_identifier,
)

logger = get_logger(__name__)


class DeviceService(OrganizationScopedService):
    """Device mutations for one organization."""

    async def _home_snapshot(self, home_id: str | None) -> HomeSnapshot | None:
        if home_id is None:
            return None
        return HomeSnapshot.of(await self._reload(self.homes, home_id, "home"))

    async def create_device(
        self,
        unique_id: str,
        name: str,
        *,
        home_id: str | None = None,
    ) -> MutationResult[Device]:
        """Register a device, optionally attached to a home.

        Raises:
            InvalidInputError: If unique_id is empty
            ResourceNotFoundError: If the home does not exist
            AuthorizationError: If the home belongs to another organization
            DuplicateResourceError: If unique_id is taken
        """
        require_identifier("unique_id", unique_id)
        if home_id is not None:
            await self._load_one_scoped(self.homes, home_id, "home")

        device_id = str(uuid.uuid4())
        async with self._hold(home_ids=[home_id], device_ids=[device_id]):
            home = await self._home_snapshot(home_id)
            async with self._conflicts_as("device", "unique_id", unique_id):
                device = await self.devices.create(
                    Device(
                        id=device_id,
                        unique_id=unique_id,
                        organization_id=self.organization_id,
                        home_id=home_id,
                        name=name,
                    )
                )
            await self.session.commit()

            report = await self.engine.on_device_created(DeviceRef.of(device), home)

        logger.info(
            f"Created device {device_id} ({unique_id}) in home {home_id}",
            extra={"device_id": device_id, "home_id": home_id},
        )
        return MutationResult(device, report)

    async def update_device(
        self,
        device_id: str,
        *,
        unique_id: str | None = None,
        name: str | None = None,
        home_id: str | None = None,
        detach_home: bool = False,
    ) -> MutationResult[Device]:
        """Rename a device and/or move it to another home.

        Args:
            device_id: Device to update
            unique_id: New external identifier
            name: New display name
            home_id: Home to attach the device to
            detach_home: Detach the device from its home

        Raises:
            InvalidInputError: If unique_id is empty, or both home_id and
                detach_home are given
        """
        if unique_id is not None:
            require_identifier("unique_id", unique_id)
        if detach_home and home_id is not None:
            raise InvalidInputError(
                "home_id and detach_home are mutually exclusive",
                field="home_id",
                value=home_id,
            )
        device = await self._load_one_scoped(self.devices, device_id, "device")
        if home_id is not None:
            await self._load_one_scoped(self.homes, home_id, "home")

        while True:
            locked_home_id = device.home_id
            async with self._hold(
                home_ids=[locked_home_id, home_id], device_ids=[device_id]
            ):
                device = await self._reload(self.devices, device_id, "device")
                if device.home_id != locked_home_id:
                    # Moved (or its home deleted) before the locks were acquired
                    continue

                previous = DeviceRef.of(device)
                previous_home = await self._home_snapshot(device.home_id)

                if unique_id is not None:
                    device.unique_id = unique_id
                if name is not None:
                    device.name = name
                if detach_home:
                    device.home_id = None
                elif home_id is not None:
                    device.home_id = home_id
                updated_home = await self._home_snapshot(device.home_id)

                async with self._conflicts_as("device", "unique_id", device.unique_id):
                    await self.session.flush()
                await self.session.commit()

                report = await self.engine.on_device_updated(
                    previous, previous_home, DeviceRef.of(device), updated_home
                )
                break

        return MutationResult(device, report)

    async def delete_device(self, device_id: str) -> MutationResult[DeviceRef]:
        """Delete a device and remove it from its home's indices."""
        device = await self._load_one_scoped(self.devices, device_id, "device")

        while True:
            locked_home_id = device.home_id
            async with self._hold(home_ids=[locked_home_id], device_ids=[device_id]):
                device = await self._reload(self.devices, device_id, "device")
                if device.home_id != locked_home_id:
                    continue

                ref = DeviceRef.of(device)
                home = await self._home_snapshot(device.home_id)
                await self.devices.delete(device)
                await self.session.commit()

                report = await self.engine.on_device_deleted(ref, home)
                break

        logger.info(
            f"Deleted device {device_id} ({ref.unique_id})",
            extra={"device_id": device_id, "home_id": locked_home_id},
        )
        return MutationResult(ref, report)
