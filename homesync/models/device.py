"""Device model.

A Device optionally belongs to one Home. Detaching a device (or deleting its
home) leaves ``home_id`` unset.
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


class Device(Base):
    """An IoT device registered in an organization.

    Attributes:
        id: Unique identifier for the device
        unique_id: External identifier reported by the device (globally unique)
        organization_id: FK to the owning organization
        home_id: FK to the home the device is attached to, if any
        name: Display name
        created_at: When the device record was created
    """

    __tablename__ = "devices"
    __table_args__ = (
        Index("idx_devices_home_id", "home_id"),
        Index("idx_devices_organization_id", "organization_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    unique_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    home_id: Mapped[str | None] = mapped_column(
        ForeignKey("homes.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    organization: Mapped[Organization] = relationship("Organization", back_populates="devices")
    home: Mapped[Home | None] = relationship("Home", back_populates="devices")

    def __repr__(self) -> str:
        return f"<Device(id={self.id!r}, unique_id={self.unique_id!r}, home_id={self.home_id!r})>"
