"""Enumeration types for the home index synchronization service."""

from enum import Enum


class IndexFamily(str, Enum):
    """Families of set-valued lookup indices kept in the index cache.

    - DEVICE_BY_HOME_ID: home id -> device ids attached to the home
    - DEVICE_BY_HOME_UNIQUE_KEY: home unique id -> device unique ids
    - HOME_BY_USER_ID: user id -> ids of enabled homes the user is linked to
    """

    DEVICE_BY_HOME_ID = "device-by-home-id"
    DEVICE_BY_HOME_UNIQUE_KEY = "device-by-home-unique-key"
    HOME_BY_USER_ID = "home-by-user-id"

    def __str__(self) -> str:
        """Return string representation of the family."""
        return self.value


class HomeIndexState(str, Enum):
    """Whether a home's device index entries exist in the index cache.

    - ABSENT: the home is disabled (or deleted); its entries must not exist
    - MATERIALIZED: the home is enabled; its entries mirror its attached devices
    """

    ABSENT = "absent"
    MATERIALIZED = "materialized"

    @classmethod
    def from_disabled(cls, disabled: bool) -> "HomeIndexState":
        return cls.ABSENT if disabled else cls.MATERIALIZED

    def __str__(self) -> str:
        return self.value


class EnableTransition(str, Enum):
    """Change in a home's enabled status across one mutation."""

    NONE = "none"
    ENABLE = "enable"
    DISABLE = "disable"

    def __str__(self) -> str:
        return self.value
