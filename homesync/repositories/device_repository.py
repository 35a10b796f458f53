"""Repository for Device entity database operations."""

from homesync.models import Device
from homesync.repositories.base import Repository


class DeviceRepository(Repository[Device]):
    """Repository for Device entity database operations."""

    model_class = Device
