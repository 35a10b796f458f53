"""Repositories for User entities and UserHome links.

Links are written with set semantics: attaching an existing link and detaching
a missing one are both no-ops, so bulk link requests can be replayed safely.

Example:
    async with get_session() as session:
        links = UserHomeRepository(session)
        await links.attach(user_ids=["u1", "u2"], home_ids=["h1"])
        await links.detach(user_ids=["u3"], home_ids=["h1"])
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from homesync.models import User, UserHome
from homesync.repositories.base import Repository

if TYPE_CHECKING:
    from collections.abc import Sequence


class UserRepository(Repository[User]):
    """Repository for User entity database operations."""

    model_class = User

    async def get_linked_home_ids(self, user_id: str) -> list[str]:
        """Get the ids of homes a user is linked to (enabled or not)."""
        stmt = (
            select(UserHome.home_id)
            .where(UserHome.user_id == user_id)
            .order_by(UserHome.home_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class UserHomeRepository(Repository[UserHome]):
    """Repository for the UserHome association table."""

    model_class = UserHome

    async def attach(self, user_ids: Sequence[str], home_ids: Sequence[str]) -> int:
        """Create every (user, home) link that does not exist yet.

        Args:
            user_ids: Users to link.
            home_ids: Homes to link each user to.

        Returns:
            Number of links created.
        """
        pairs = {(user_id, home_id) for user_id in user_ids for home_id in home_ids}
        if not pairs:
            return 0

        stmt = select(UserHome.user_id, UserHome.home_id).where(
            UserHome.user_id.in_(list(user_ids)),
            UserHome.home_id.in_(list(home_ids)),
        )
        result = await self.session.execute(stmt)
        existing = {(user_id, home_id) for user_id, home_id in result.all()}

        missing = sorted(pairs - existing)
        self.session.add_all(
            [UserHome(user_id=user_id, home_id=home_id) for user_id, home_id in missing]
        )
        await self.session.flush()
        return len(missing)

    async def detach(self, user_ids: Sequence[str], home_ids: Sequence[str]) -> int:
        """Delete every (user, home) link in the cross product.

        Returns:
            Number of links deleted.
        """
        if not user_ids or not home_ids:
            return 0

        stmt = delete(UserHome).where(
            UserHome.user_id.in_(list(user_ids)),
            UserHome.home_id.in_(list(home_ids)),
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0
