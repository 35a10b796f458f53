"""Repository pattern implementation for database access abstraction.

Exports:
    Repository: Generic base class for all repositories
    HomeRepository: Homes plus attached-device and linked-user lookups
    DeviceRepository: Repository for Device entity
    UserRepository: Repository for User entity
    UserHomeRepository: Idempotent attach/detach of user-home links
"""

from homesync.repositories.base import Repository
from homesync.repositories.device_repository import DeviceRepository
from homesync.repositories.home_repository import HomeRepository
from homesync.repositories.user_repository import UserHomeRepository, UserRepository

__all__ = [
    "DeviceRepository",
    "HomeRepository",
    "Repository",
    "UserHomeRepository",
    "UserRepository",
]
