"""Organization model, the tenant boundary for homes, devices and users.

Every mutation is scoped to one organization; entities outside the caller's
organization are rejected before any write.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homesync.core.database import Base

if TYPE_CHECKING:
    from .device import Device
    from .home import Home
    from .user import User


class Organization(Base):
    """Tenant that owns homes, devices and users.

    Attributes:
        id: Unique identifier for the organization
        name: Display name
        max_homes: Maximum number of homes the organization may create
        created_at: When the organization record was created
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    max_homes: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    homes: Mapped[list[Home]] = relationship("Home", back_populates="organization")
    devices: Mapped[list[Device]] = relationship("Device", back_populates="organization")
    users: Mapped[list[User]] = relationship("User", back_populates="organization")

    def __repr__(self) -> str:
        return f"<Organization(id={self.id!r}, name={self.name!r})>"
