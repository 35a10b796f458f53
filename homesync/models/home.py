"""Home model.

A Home groups devices (1:N) and is linked to users (M:N through UserHome).
Its ``unique_id`` is the external identifier used by IoT transport and can be
renamed independently of ``id``. The ``disabled`` flag decides whether the
home's lookup indices are materialized in the index cache.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homesync.core.database import Base

if TYPE_CHECKING:
    from .device import Device
    from .organization import Organization
    from .user import UserHome


class Home(Base):
    """A physical home managed by an organization.

    Attributes:
        id: Unique identifier for the home
        unique_id: External, renameable identifier (globally unique)
        organization_id: FK to the owning organization
        name: Display name
        description: Optional free-form description
        disabled: When True the home is hidden from users and its indices are absent
        created_at: When the home record was created
        devices: Devices attached to the home
        user_links: UserHome rows linking users to the home
    """

    __tablename__ = "homes"
    __table_args__ = (
        Index("idx_homes_organization_id", "organization_id"),
        Index("idx_homes_disabled", "disabled"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    unique_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    organization: Mapped[Organization] = relationship("Organization", back_populates="homes")
    devices: Mapped[list[Device]] = relationship(
        "Device", back_populates="home", passive_deletes=True
    )
    user_links: Mapped[list[UserHome]] = relationship(
        "UserHome",
        back_populates="home",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Home(id={self.id!r}, unique_id={self.unique_id!r}, disabled={self.disabled})>"
        )
