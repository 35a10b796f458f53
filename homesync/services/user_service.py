"""User-side mutations: bulk home linking and user deletion."""

from __future__ import annotations

from collections.abc import Sequence

from homesync.core.logging import get_logger
from homesync.models import User
from homesync.services.index_sync import HomeSnapshot
from homesync.services.mutation import (
    MutationResult,
    OrganizationScopedService,
    unique_ids,
)

logger = get_logger(__name__)


class UserService(OrganizationScopedService):
    """User-side mutations for one organization."""

    async def link_homes_users(
        self,
        user_ids: Sequence[str],
        attach_home_ids: Sequence[str] = (),
        detach_home_ids: Sequence[str] = (),
    ) -> MutationResult[list[User]]:
        """Attach and detach homes for many users in one transaction.

        A home listed in both ``attach_home_ids`` and ``detach_home_ids`` ends
        up unlinked. Disabled homes are linked relationally but never appear in
        the users' home indices.
        """
        users_wanted = unique_ids(user_ids)
        attach = unique_ids(attach_home_ids)
        detach = unique_ids(detach_home_ids)
        await self._load_scoped(self.users, users_wanted, "user")
        await self._load_scoped(self.homes, [*attach, *detach], "home")

        async with self._hold(home_ids=[*attach, *detach], user_ids=users_wanted):
            users = await self._load_scoped(self.users, users_wanted, "user")
            homes = {
                home.id: HomeSnapshot.of(home)
                for home in await self._load_scoped(self.homes, [*attach, *detach], "home")
            }
            async with self._conflicts_as("user_home", "user_id", ",".join(users_wanted)):
                await self.links.attach(users_wanted, attach)
                await self.links.detach(users_wanted, detach)
            await self.session.commit()

            report = await self.engine.on_user_bulk_link(
                users_wanted,
                [homes[home_id] for home_id in attach],
                [homes[home_id] for home_id in detach],
            )

        logger.info(
            f"Bulk link on {len(users_wanted)} users: attached {len(attach)} homes, "
            f"detached {len(detach)} homes",
            extra={"organization_id": self.organization_id, "user_count": len(users_wanted)},
        )
        return MutationResult(users, report)

    async def delete_user(self, user_id: str) -> MutationResult[str]:
        """Delete a user together with its home links and its home index."""
        await self._load_one_scoped(self.users, user_id, "user")
        linked_home_ids = await self.users.get_linked_home_ids(user_id)

        async with self._hold(home_ids=linked_home_ids, user_ids=[user_id]):
            user = await self._reload(self.users, user_id, "user")
            await self.users.delete(user)
            await self.session.commit()

            report = await self.engine.on_user_deleted(user_id)

        logger.info(
            f"Deleted user {user_id} with {len(linked_home_ids)} home links",
            extra={"user_id": user_id, "organization_id": self.organization_id},
        )
        return MutationResult(user_id, report)
