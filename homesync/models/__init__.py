"""SQLAlchemy models for the home index synchronization service."""

from homesync.core.database import Base

from .device import Device
from .enums import EnableTransition, HomeIndexState, IndexFamily
from .home import Home
from .organization import Organization
from .user import User, UserHome

__all__ = [
    "Base",
    "Device",
    "EnableTransition",
    "Home",
    "HomeIndexState",
    "IndexFamily",
    "Organization",
    "User",
    "UserHome",
]
