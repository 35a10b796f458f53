"""Home mutations and their index convergence.

HomeService is the home-side entry point: creating, renaming, enabling,
disabling and deleting homes, and linking users to homes. Each method commits
its relational write before awaiting the synchronization engine, and returns a
MutationResult whether or not the index cache converged.

Example:
    async with get_session() as session:
        engine = await get_index_sync_engine()
        service = HomeService(session, organization_id, engine)

        result = await service.disable_homes([home_id])
        if not result.converged:
            logger.warning(f"Stale index keys: {result.convergence.indeterminate_keys}")
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

from homesync.core.exceptions import ResourceNotFoundError, ValidationError
from homesync.core.logging import get_logger
from homesync.models import Home, Organization
from homesync.services.index_sync import (
    ConvergenceReport,
    DeviceRef,
    HomeMembership,
    HomeSnapshot,
)
from homesync.services.mutation import (
    MutationResult,
    OrganizationScopedService,
    require_identifier,
    unique_ids,
)

logger = get_logger(__name__)


class HomeService(OrganizationScopedService):
    """Home-side mutations for one organization."""

    async def _device_refs(self, home_id: str) -> list[DeviceRef]:
        return [DeviceRef.of(device) for device in await self.homes.get_attached_devices(home_id)]

    async def create_home(
        self,
        unique_id: str,
        name: str,
        *,
        description: str | None = None,
        disabled: bool = False,
        creator_user_id: str | None = None,
    ) -> MutationResult[Home]:
        """Create a home, optionally linking the creating user to it.

        Args:
            unique_id: External identifier; must be globally unique
            name: Display name
            description: Optional description
            disabled: Create the home disabled
            creator_user_id: User to link to the new home

        Returns:
            MutationResult with the new Home

        Raises:
            InvalidInputError: If unique_id is empty
            ResourceNotFoundError: If the organization or creator does not exist
            AuthorizationError: If the creator belongs to another organization
            ValidationError: If the organization already has max_homes homes
            DuplicateResourceError: If unique_id is taken
        """
        require_identifier("unique_id", unique_id)
        organization = await self.session.get(Organization, self.organization_id)
        if organization is None:
            raise ResourceNotFoundError("organization", self.organization_id)
        creator_ids = [creator_user_id] if creator_user_id is not None else []
        await self._load_scoped(self.users, creator_ids, "user")

        home_id = str(uuid.uuid4())
        async with self._hold(home_ids=[home_id], user_ids=creator_ids):
            home_count = await self.homes.count_by_organization(self.organization_id)
            if home_count >= organization.max_homes:
                raise ValidationError(
                    f"Organization {self.organization_id} reached its limit of "
                    f"{organization.max_homes} homes",
                    error_code="HOME_LIMIT_REACHED",
                    details={"max_homes": organization.max_homes},
                )

            async with self._conflicts_as("home", "unique_id", unique_id):
                home = await self.homes.create(
                    Home(
                        id=home_id,
                        unique_id=unique_id,
                        organization_id=self.organization_id,
                        name=name,
                        description=description,
                        disabled=disabled,
                    )
                )
                await self.links.attach(creator_ids, [home_id])
            await self.session.commit()

            snapshot = HomeSnapshot.of(home)
            reports = [await self.engine.on_home_created(snapshot)]
            for user_id in creator_ids:
                reports.append(
                    await self.engine.on_user_home_linked(user_id, home_id, snapshot.enabled)
                )

        logger.info(
            f"Created home {home_id} ({unique_id}) in organization {self.organization_id}",
            extra={"home_id": home_id, "organization_id": self.organization_id},
        )
        return MutationResult(home, ConvergenceReport.combine("home_created", reports))

    async def update_home(
        self,
        home_id: str,
        *,
        unique_id: str | None = None,
        name: str | None = None,
        description: str | None = None,
        disabled: bool | None = None,
    ) -> MutationResult[Home]:
        """Update a home's attributes; None leaves an attribute unchanged.

        Renaming ``unique_id`` and flipping ``disabled`` may happen in the same
        call; the index plan handles both at once.
        """
        if unique_id is not None:
            require_identifier("unique_id", unique_id)
        await self._load_one_scoped(self.homes, home_id, "home")

        async with self._hold(home_ids=[home_id]):
            home = await self._reload(self.homes, home_id, "home")
            previous = HomeSnapshot.of(home)

            if unique_id is not None:
                home.unique_id = unique_id
            if name is not None:
                home.name = name
            if description is not None:
                home.description = description
            if disabled is not None:
                home.disabled = disabled

            async with self._conflicts_as("home", "unique_id", home.unique_id):
                await self.session.flush()
            updated = HomeSnapshot.of(home)
            devices = await self._device_refs(home_id)
            user_ids = await self.homes.get_linked_user_ids(home_id)
            await self.session.commit()

            report = await self.engine.on_home_updated(previous, updated, devices, user_ids)

        logger.info(
            f"Updated home {home_id}: unique_id {previous.unique_id} -> {updated.unique_id}, "
            f"disabled {previous.disabled} -> {updated.disabled}",
            extra={"home_id": home_id, "organization_id": self.organization_id},
        )
        return MutationResult(home, report)

    async def delete_home(self, home_id: str) -> MutationResult[HomeSnapshot]:
        """Delete a home. Its links are removed and its devices are detached."""
        await self._load_one_scoped(self.homes, home_id, "home")

        async with self._hold(home_ids=[home_id]):
            home = await self._reload(self.homes, home_id, "home")
            snapshot = HomeSnapshot.of(home)
            devices = await self._device_refs(home_id)
            user_ids = await self.homes.get_linked_user_ids(home_id)

            await self.homes.delete(home)
            await self.session.commit()

            report = await self.engine.on_home_deleted(snapshot, devices, user_ids)

        logger.info(
            f"Deleted home {home_id} ({snapshot.unique_id}), detached {len(devices)} devices",
            extra={"home_id": home_id, "organization_id": self.organization_id},
        )
        return MutationResult(snapshot, report)

    async def disable_homes(self, home_ids: Sequence[str]) -> MutationResult[list[Home]]:
        """Disable homes in bulk. Links are kept; index entries are removed."""
        return await self._set_disabled(home_ids, disabled=True)

    async def enable_homes(self, home_ids: Sequence[str]) -> MutationResult[list[Home]]:
        """Enable homes in bulk, restoring their index entries from current relations."""
        return await self._set_disabled(home_ids, disabled=False)

    async def _set_disabled(
        self, home_ids: Sequence[str], *, disabled: bool
    ) -> MutationResult[list[Home]]:
        ids = unique_ids(home_ids)
        mutation = "homes_bulk_disabled" if disabled else "homes_bulk_enabled"
        if not ids:
            return MutationResult([], ConvergenceReport(mutation=mutation))
        await self._load_scoped(self.homes, ids, "home")

        async with self._hold(home_ids=ids):
            homes = await self._load_scoped(self.homes, ids, "home")
            devices_by_home = await self.homes.get_attached_devices_by_home(ids)
            users_by_home = await self.homes.get_linked_user_ids_by_home(ids)
            memberships = [
                HomeMembership(
                    home=HomeSnapshot.of(home),
                    devices=tuple(DeviceRef.of(device) for device in devices_by_home[home.id]),
                    user_ids=tuple(users_by_home[home.id]),
                )
                for home in homes
            ]

            for home in homes:
                home.disabled = disabled
            await self.session.flush()
            await self.session.commit()

            if disabled:
                report = await self.engine.on_homes_bulk_disabled(memberships)
            else:
                report = await self.engine.on_homes_bulk_enabled(memberships)

        changed = sum(1 for membership in memberships if membership.home.disabled != disabled)
        logger.info(
            f"{'Disabled' if disabled else 'Enabled'} {changed} of {len(ids)} homes",
            extra={"organization_id": self.organization_id, "home_count": len(ids)},
        )
        return MutationResult(homes, report)

    async def link_user(self, home_id: str, user_id: str) -> MutationResult[bool]:
        """Link a user to a home.

        Returns:
            MutationResult whose value is True if a new link was created
        """
        await self._load_one_scoped(self.homes, home_id, "home")
        await self._load_one_scoped(self.users, user_id, "user")

        async with self._hold(home_ids=[home_id], user_ids=[user_id]):
            home = await self._reload(self.homes, home_id, "home")
            async with self._conflicts_as("user_home", "home_id", home_id):
                created = await self.links.attach([user_id], [home_id])
            await self.session.commit()

            report = await self.engine.on_user_home_linked(user_id, home_id, not home.disabled)

        return MutationResult(created > 0, report)

    async def unlink_user(self, home_id: str, user_id: str) -> MutationResult[bool]:
        """Remove a user's link to a home.

        Returns:
            MutationResult whose value is True if a link was deleted
        """
        await self._load_one_scoped(self.homes, home_id, "home")
        await self._load_one_scoped(self.users, user_id, "user")

        async with self._hold(home_ids=[home_id], user_ids=[user_id]):
            home = await self._reload(self.homes, home_id, "home")
            deleted = await self.links.detach([user_id], [home_id])
            await self.session.commit()

            report = await self.engine.on_user_home_unlinked(user_id, home_id, not home.disabled)

        return MutationResult(deleted > 0, report)

    async def link_users_homes(
        self,
        home_ids: Sequence[str],
        attach_user_ids: Sequence[str] = (),
        detach_user_ids: Sequence[str] = (),
    ) -> MutationResult[list[Home]]:
        """Attach and detach many users for many homes in one transaction.

        A user listed in both ``attach_user_ids`` and ``detach_user_ids`` ends
        up unlinked.
        """
        ids = unique_ids(home_ids)
        attach = unique_ids(attach_user_ids)
        detach = unique_ids(detach_user_ids)
        await self._load_scoped(self.homes, ids, "home")
        await self._load_scoped(self.users, [*attach, *detach], "user")

        async with self._hold(home_ids=ids, user_ids=[*attach, *detach]):
            homes = await self._load_scoped(self.homes, ids, "home")
            async with self._conflicts_as("user_home", "home_id", ",".join(ids)):
                await self.links.attach(attach, ids)
                await self.links.detach(detach, ids)
            await self.session.commit()

            report = await self.engine.on_bulk_link(
                [HomeSnapshot.of(home) for home in homes], attach, detach
            )

        logger.info(
            f"Bulk link on {len(ids)} homes: attached {len(attach)} users, "
            f"detached {len(detach)} users",
            extra={"organization_id": self.organization_id, "home_count": len(ids)},
        )
        return MutationResult(homes, report)
