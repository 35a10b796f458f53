"""Core infrastructure components."""

from homesync.core.config import Settings, get_settings
from homesync.core.database import (
    Base,
    close_db,
    get_session,
    get_session_factory,
    init_db,
)
from homesync.core.logging import (
    get_logger,
    get_request_id,
    log_context,
    set_request_id,
    setup_logging,
)
from homesync.core.redis import (
    RedisClient,
    close_redis,
    init_redis,
)

__all__ = [
    "Base",
    "RedisClient",
    "Settings",
    "close_db",
    "close_redis",
    "get_logger",
    "get_request_id",
    "get_session",
    "get_session_factory",
    "get_settings",
    "init_db",
    "init_redis",
    "log_context",
    "set_request_id",
    "setup_logging",
]
