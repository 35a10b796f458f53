"""User and UserHome link models.

A UserHome row grants a user access to a home. The link is independent of the
home's ``disabled`` flag: disabling a home hides it from the user's home index
without deleting the link.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homesync.core.database import Base

if TYPE_CHECKING:
    from .home import Home
    from .organization import Organization


class User(Base):
    """A user belonging to an organization.

    Attributes:
        id: Unique identifier for the user
        organization_id: FK to the owning organization
        email: Login email (unique)
        name: Display name
        created_at: When the user record was created
        home_links: UserHome rows linking the user to homes
    """

    __tablename__ = "users"
    __table_args__ = (Index("idx_users_organization_id", "organization_id"),)

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    organization: Mapped[Organization] = relationship("Organization", back_populates="users")
    home_links: Mapped[list[UserHome]] = relationship(
        "UserHome",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, email={self.email!r})>"


class UserHome(Base):
    """Association granting a user access to a home."""

    __tablename__ = "user_homes"
    __table_args__ = (Index("idx_user_homes_home_id", "home_id"),)

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    home_id: Mapped[str] = mapped_column(
        ForeignKey("homes.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="home_links")
    home: Mapped[Home] = relationship("Home", back_populates="user_links")

    def __repr__(self) -> str:
        return f"<UserHome(user_id={self.user_id!r}, home_id={self.home_id!r})>"
