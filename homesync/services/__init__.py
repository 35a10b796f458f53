"""Index synchronization services.

Exports:
    IndexSyncEngine: Plans and applies index convergence for every mutation
    RedisIndexCache / InMemoryIndexCache: Index cache backends
    HomeService / UserService / DeviceService: Organization-scoped mutation entry points
"""

from homesync.services.device_service import DeviceService
from homesync.services.home_service import HomeService
from homesync.services.index_cache import (
    InMemoryIndexCache,
    RedisIndexCache,
    build_index_key,
    get_index_cache,
    reset_index_cache,
)
from homesync.services.index_sync import (
    ConvergenceReport,
    DeviceRef,
    HomeMembership,
    HomeSnapshot,
    IndexOperation,
    IndexPlan,
    IndexSyncEngine,
    classify_transition,
    get_index_sync_engine,
    reset_index_sync_engine,
)
from homesync.services.mutation import MutationResult, get_mutation_locks, reset_mutation_locks
from homesync.services.user_service import UserService

__all__ = [
    "ConvergenceReport",
    "DeviceRef",
    "DeviceService",
    "HomeMembership",
    "HomeService",
    "HomeSnapshot",
    "InMemoryIndexCache",
    "IndexOperation",
    "IndexPlan",
    "IndexSyncEngine",
    "MutationResult",
    "RedisIndexCache",
    "UserService",
    "build_index_key",
    "classify_transition",
    "get_index_cache",
    "get_index_sync_engine",
    "get_mutation_locks",
    "reset_index_cache",
    "reset_index_sync_engine",
    "reset_mutation_locks",
]
