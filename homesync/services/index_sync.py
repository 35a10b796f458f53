"""Index synchronization engine.

Keeps the three lookup index families consistent with the relational store:

- device-by-home-id[home.id]            = ids of devices attached to the home
- device-by-home-unique-key[home.unique_id] = unique ids of those devices
- home-by-user-id[user.id]              = ids of enabled homes linked to the user

A home's device entries exist only while the home is enabled
(HomeIndexState.MATERIALIZED); a user's home set only ever lists enabled homes.

Every mutation is handled in two steps:

1. A pure planning function turns pre-/post-mutation snapshots into an
   IndexPlan. Plans are split into a retire phase (whole-key deletions) and a
   materialize phase (member adds and removes). Operations within one phase
   commute, so each phase is issued concurrently.
2. IndexSyncEngine.apply executes the plan against an IndexCacheProtocol
   backend, retire phase first. A failed operation is logged, counted and
   reported in the returned ConvergenceReport; it never aborts the rest of
   the plan and is never raised to the caller, because the relational write
   it follows has already committed.

Usage:
    engine = await get_index_sync_engine()
    report = await engine.on_home_updated(previous, updated, devices, user_ids)
    if not report.converged:
        ...  # keys listed in report.failures are indeterminate
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from homesync.core.async_utils import bounded_gather
from homesync.core.config import get_settings
from homesync.core.logging import get_logger, log_context, sanitize_error
from homesync.core.metrics import (
    observe_convergence_duration,
    record_index_convergence_failure,
    record_index_operation,
)
from homesync.models.enums import EnableTransition, HomeIndexState, IndexFamily
from homesync.services.index_cache import get_index_cache

if TYPE_CHECKING:
    from homesync.core.protocols import IndexCacheProtocol

logger = get_logger(__name__)


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True, slots=True)
class HomeSnapshot:
    """The index-relevant attributes of a home at one point in time."""

    id: str
    unique_id: str
    disabled: bool = False

    @property
    def index_state(self) -> HomeIndexState:
        return HomeIndexState.from_disabled(self.disabled)

    @property
    def enabled(self) -> bool:
        return not self.disabled

    @classmethod
    def of(cls, home: Any) -> HomeSnapshot:
        """Capture a snapshot from a Home model (or any object with the same fields)."""
        return cls(id=str(home.id), unique_id=home.unique_id, disabled=bool(home.disabled))


@dataclass(frozen=True, slots=True)
class DeviceRef:
    """A device's id and unique id."""

    id: str
    unique_id: str

    @classmethod
    def of(cls, device: Any) -> DeviceRef:
        return cls(id=str(device.id), unique_id=device.unique_id)


@dataclass(frozen=True, slots=True)
class HomeMembership:
    """A home snapshot together with its attached devices and linked users.

    Used by bulk enable/disable, where every home carries its own relations.
    """

    home: HomeSnapshot
    devices: tuple[DeviceRef, ...] = ()
    user_ids: tuple[str, ...] = ()


def classify_transition(previous: HomeSnapshot, updated: HomeSnapshot) -> EnableTransition:
    """Classify the change in enabled status between two snapshots of one home."""
    if previous.disabled == updated.disabled:
        return EnableTransition.NONE
    if updated.disabled:
        return EnableTransition.DISABLE
    return EnableTransition.ENABLE


# =============================================================================
# Plans
# =============================================================================


class IndexOpKind(str, Enum):
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    DELETE_KEY = "delete_key"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class IndexOperation:
    """One index cache operation. ``member`` is None for DELETE_KEY."""

    kind: IndexOpKind
    family: IndexFamily
    key: str
    member: str | None = None

    def __str__(self) -> str:
        target = f"{self.family}[{self.key}]"
        if self.member is None:
            return f"{self.kind} {target}"
        return f"{self.kind} {target} {self.member}"


@dataclass
class IndexPlan:
    """Index operations for one mutation, split into two ordered phases.

    Attributes:
        retire: Whole-key deletions, executed first
        materialize: Member adds and removes, executed after ``retire``
    """

    retire: list[IndexOperation] = field(default_factory=list)
    materialize: list[IndexOperation] = field(default_factory=list)
    _seen: set[IndexOperation] = field(default_factory=set, repr=False, compare=False)

    @property
    def operations(self) -> list[IndexOperation]:
        return [*self.retire, *self.materialize]

    @property
    def is_empty(self) -> bool:
        return not self.retire and not self.materialize

    def delete_key(self, family: IndexFamily, key: str) -> None:
        op = IndexOperation(IndexOpKind.DELETE_KEY, family, key)
        if op not in self._seen:
            self._seen.add(op)
            self.retire.append(op)

    def add_member(self, family: IndexFamily, key: str, member: str) -> None:
        self._append(IndexOperation(IndexOpKind.ADD_MEMBER, family, key, member))

    def remove_member(self, family: IndexFamily, key: str, member: str) -> None:
        self._append(IndexOperation(IndexOpKind.REMOVE_MEMBER, family, key, member))

    def _append(self, op: IndexOperation) -> None:
        if op not in self._seen:
            self._seen.add(op)
            self.materialize.append(op)

    def extend(self, other: IndexPlan) -> None:
        for op in other.retire:
            self.delete_key(op.family, op.key)
        for op in other.materialize:
            self._append(op)


def _add_home_devices(plan: IndexPlan, home: HomeSnapshot, devices: Iterable[DeviceRef]) -> None:
    for device in devices:
        plan.add_member(IndexFamily.DEVICE_BY_HOME_ID, home.id, device.id)
        plan.add_member(IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, home.unique_id, device.unique_id)


def _retire_home_devices(plan: IndexPlan, home: HomeSnapshot) -> None:
    plan.delete_key(IndexFamily.DEVICE_BY_HOME_ID, home.id)
    plan.delete_key(IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, home.unique_id)


def plan_home_created(home: HomeSnapshot) -> IndexPlan:
    """A new home has no devices and no links, so nothing to index yet."""
    return IndexPlan()


def plan_home_updated(
    previous: HomeSnapshot,
    updated: HomeSnapshot,
    devices: Iterable[DeviceRef],
    user_ids: Iterable[str],
) -> IndexPlan:
    """Plan convergence after a home update (rename and/or enable change).

    Args:
        previous: Home before the update
        updated: Home after the update
        devices: Devices attached to the home
        user_ids: Users linked to the home

    Returns:
        The plan. A renamed home that was enabled retires the set under its
        old unique id. A home that ends up disabled retires both device sets; one that
        ends up enabled re-adds every attached device. User sets change only
        when the enabled status flips.
    """
    plan = IndexPlan()

    renamed = previous.unique_id != updated.unique_id
    if renamed and previous.index_state is HomeIndexState.MATERIALIZED:
        plan.delete_key(IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, previous.unique_id)

    if updated.index_state is HomeIndexState.MATERIALIZED:
        _add_home_devices(plan, updated, devices)
    else:
        _retire_home_devices(plan, updated)

    transition = classify_transition(previous, updated)
    if transition is EnableTransition.DISABLE:
        for user_id in user_ids:
            plan.remove_member(IndexFamily.HOME_BY_USER_ID, user_id, updated.id)
    elif transition is EnableTransition.ENABLE:
        for user_id in user_ids:
            plan.add_member(IndexFamily.HOME_BY_USER_ID, user_id, updated.id)

    return plan


def plan_home_deleted(home: HomeSnapshot, user_ids: Iterable[str]) -> IndexPlan:
    """Plan convergence after a home is deleted.

    Both device sets are deleted even for a disabled home; the user sets only
    listed the home while it was enabled.
    """
    plan = IndexPlan()
    _retire_home_devices(plan, home)
    if home.index_state is HomeIndexState.MATERIALIZED:
        for user_id in user_ids:
            plan.remove_member(IndexFamily.HOME_BY_USER_ID, user_id, home.id)
    return plan


def plan_homes_bulk_state(memberships: Iterable[HomeMembership], disabled: bool) -> list[IndexPlan]:
    """Plan one independent convergence per home whose state actually changes.

    Homes already in the target state contribute no plan.
    """
    plans = []
    for membership in memberships:
        previous = membership.home
        if previous.disabled == disabled:
            continue
        plans.append(
            plan_home_updated(
                previous,
                replace(previous, disabled=disabled),
                membership.devices,
                membership.user_ids,
            )
        )
    return plans


def plan_user_home_linked(user_id: str, home_id: str, home_enabled: bool) -> IndexPlan:
    plan = IndexPlan()
    if home_enabled:
        plan.add_member(IndexFamily.HOME_BY_USER_ID, user_id, home_id)
    return plan


def plan_user_home_unlinked(user_id: str, home_id: str, home_enabled: bool) -> IndexPlan:
    plan = IndexPlan()
    if home_enabled:
        plan.remove_member(IndexFamily.HOME_BY_USER_ID, user_id, home_id)
    return plan


def plan_bulk_link(
    homes: Iterable[HomeSnapshot],
    attach_user_ids: Iterable[str],
    detach_user_ids: Iterable[str],
) -> IndexPlan:
    """Plan convergence after linking/unlinking many users to many homes.

    Only enabled homes are touched. A user named in both lists ends up
    unlinked, matching the relational write, which detaches after attaching.
    """
    detach = list(dict.fromkeys(detach_user_ids))
    attach = [user_id for user_id in dict.fromkeys(attach_user_ids) if user_id not in detach]

    plan = IndexPlan()
    for home in homes:
        if not home.enabled:
            continue
        for user_id in attach:
            plan.add_member(IndexFamily.HOME_BY_USER_ID, user_id, home.id)
        for user_id in detach:
            plan.remove_member(IndexFamily.HOME_BY_USER_ID, user_id, home.id)
    return plan


def plan_user_bulk_link(
    user_ids: Iterable[str],
    homes_to_attach: Iterable[HomeSnapshot],
    homes_to_detach: Iterable[HomeSnapshot],
) -> IndexPlan:
    """User-side counterpart of plan_bulk_link: many users, homes to attach/detach."""
    detach = [home for home in homes_to_detach if home.enabled]
    detach_ids = {home.id for home in homes_to_detach}
    attach = [home for home in homes_to_attach if home.enabled and home.id not in detach_ids]

    plan = IndexPlan()
    for user_id in dict.fromkeys(user_ids):
        for home in attach:
            plan.add_member(IndexFamily.HOME_BY_USER_ID, user_id, home.id)
        for home in detach:
            plan.remove_member(IndexFamily.HOME_BY_USER_ID, user_id, home.id)
    return plan


def plan_user_deleted(user_id: str) -> IndexPlan:
    plan = IndexPlan()
    plan.delete_key(IndexFamily.HOME_BY_USER_ID, user_id)
    return plan


def plan_device_created(device: DeviceRef, home: HomeSnapshot | None) -> IndexPlan:
    plan = IndexPlan()
    if home is not None and home.index_state is HomeIndexState.MATERIALIZED:
        _add_home_devices(plan, home, [device])
    return plan


def plan_device_updated(
    previous: DeviceRef,
    previous_home: HomeSnapshot | None,
    updated: DeviceRef,
    updated_home: HomeSnapshot | None,
) -> IndexPlan:
    """Plan convergence after a device is renamed and/or moved between homes."""
    plan = IndexPlan()

    previous_home_id = previous_home.id if previous_home is not None else None
    updated_home_id = updated_home.id if updated_home is not None else None
    same_home = previous_home_id == updated_home_id
    if same_home:
        # The id set is unchanged; only a renamed device moves within the unique-key set
        if (
            updated_home is not None
            and updated_home.index_state is HomeIndexState.MATERIALIZED
            and previous.unique_id != updated.unique_id
        ):
            plan.remove_member(
                IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, updated_home.unique_id, previous.unique_id
            )
            plan.add_member(
                IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, updated_home.unique_id, updated.unique_id
            )
        return plan

    if previous_home is not None and previous_home.index_state is HomeIndexState.MATERIALIZED:
        plan.remove_member(IndexFamily.DEVICE_BY_HOME_ID, previous_home.id, previous.id)
        plan.remove_member(
            IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, previous_home.unique_id, previous.unique_id
        )
    if updated_home is not None and updated_home.index_state is HomeIndexState.MATERIALIZED:
        _add_home_devices(plan, updated_home, [updated])
    return plan


def plan_device_deleted(device: DeviceRef, home: HomeSnapshot | None) -> IndexPlan:
    plan = IndexPlan()
    if home is not None and home.index_state is HomeIndexState.MATERIALIZED:
        plan.remove_member(IndexFamily.DEVICE_BY_HOME_ID, home.id, device.id)
        plan.remove_member(IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY, home.unique_id, device.unique_id)
    return plan


# =============================================================================
# Reports
# =============================================================================


@dataclass(frozen=True, slots=True)
class IndexOperationFailure:
    """An index operation that did not complete; its key is indeterminate."""

    operation: IndexOperation
    error: str


@dataclass
class ConvergenceReport:
    """Outcome of converging the index cache after one mutation."""

    mutation: str
    attempted: list[IndexOperation] = field(default_factory=list)
    failures: list[IndexOperationFailure] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def converged(self) -> bool:
        return not self.failures

    @property
    def indeterminate_keys(self) -> list[tuple[IndexFamily, str]]:
        """(family, key) pairs left in an unknown state, in failure order."""
        return list(dict.fromkeys((f.operation.family, f.operation.key) for f in self.failures))

    @classmethod
    def combine(cls, mutation: str, reports: Iterable[ConvergenceReport]) -> ConvergenceReport:
        combined = cls(mutation=mutation)
        for report in reports:
            combined.attempted.extend(report.attempted)
            combined.failures.extend(report.failures)
            combined.duration_seconds = max(combined.duration_seconds, report.duration_seconds)
        return combined


# =============================================================================
# Engine
# =============================================================================


class IndexSyncEngine:
    """Executes index plans against an index cache backend.

    The engine holds no per-mutation state; callers are responsible for
    serializing mutations that touch the same home or user (see KeyedLock).
    One semaphore caps the cache operations in flight across every plan the
    engine is running, so concurrent mutations and bulk batches together never
    issue more than ``fanout_limit`` commands at once.
    """

    def __init__(self, cache: IndexCacheProtocol, *, fanout_limit: int | None = None):
        """Initialize the engine.

        Args:
            cache: Backend the index operations are issued to
            fanout_limit: Max cache operations in flight across all plans
                (defaults to ``settings.index_fanout_concurrency``)
        """
        self._cache = cache
        self._fanout_limit = fanout_limit or get_settings().index_fanout_concurrency
        self._in_flight = asyncio.Semaphore(self._fanout_limit)

    @property
    def cache(self) -> IndexCacheProtocol:
        return self._cache

    async def apply(self, plan: IndexPlan, *, mutation: str) -> ConvergenceReport:
        """Execute a plan: the retire phase, then the materialize phase.

        Args:
            plan: Operations to issue
            mutation: Mutation name used for logging and metrics

        Returns:
            ConvergenceReport listing attempted and failed operations
        """
        report = ConvergenceReport(mutation=mutation)
        if plan.is_empty:
            return report

        start = time.perf_counter()
        with log_context(mutation=mutation):
            for phase in (plan.retire, plan.materialize):
                if not phase:
                    continue
                results = await bounded_gather(
                    [self._execute(op, mutation) for op in phase],
                    limit=self._fanout_limit,
                )
                report.attempted.extend(phase)
                report.failures.extend(result for result in results if result is not None)

        report.duration_seconds = time.perf_counter() - start
        observe_convergence_duration(mutation, report.duration_seconds)

        if report.failures:
            logger.error(
                f"Index convergence for {mutation} left {len(report.failures)} of "
                f"{len(report.attempted)} operations failed",
                extra={
                    "mutation": mutation,
                    "failed_operations": len(report.failures),
                    "attempted_operations": len(report.attempted),
                },
            )
        else:
            logger.debug(
                f"Index convergence for {mutation} applied {len(report.attempted)} operations",
                extra={"mutation": mutation, "attempted_operations": len(report.attempted)},
            )
        return report

    async def _execute(self, op: IndexOperation, mutation: str) -> IndexOperationFailure | None:
        record_index_operation(str(op.family), str(op.kind))
        try:
            async with self._in_flight:
                if op.kind is IndexOpKind.ADD_MEMBER:
                    await self._cache.add_member(op.family, op.key, op.member or "")
                elif op.kind is IndexOpKind.REMOVE_MEMBER:
                    await self._cache.remove_member(op.family, op.key, op.member or "")
                else:
                    await self._cache.delete_key(op.family, op.key)
        except Exception as e:
            # The key is indeterminate; the next mutation touching it converges it again
            record_index_convergence_failure(str(op.family), str(op.kind))
            error = sanitize_error(e)
            logger.error(
                f"Index operation failed during {mutation}: {op}: {error}",
                extra={
                    "mutation": mutation,
                    "index_family": str(op.family),
                    "index_key": op.key,
                    "operation": str(op.kind),
                    "member": op.member,
                },
            )
            return IndexOperationFailure(operation=op, error=error)
        return None

    # -------------------------------------------------------------------------
    # Home lifecycle
    # -------------------------------------------------------------------------

    async def on_home_created(self, home: HomeSnapshot) -> ConvergenceReport:
        return await self.apply(plan_home_created(home), mutation="home_created")

    async def on_home_updated(
        self,
        previous: HomeSnapshot,
        updated: HomeSnapshot,
        devices: Sequence[DeviceRef],
        user_ids: Sequence[str],
    ) -> ConvergenceReport:
        plan = plan_home_updated(previous, updated, devices, user_ids)
        return await self.apply(plan, mutation="home_updated")

    async def on_home_deleted(
        self,
        home: HomeSnapshot,
        devices: Sequence[DeviceRef],
        user_ids: Sequence[str],
    ) -> ConvergenceReport:
        """Converge after a home is deleted.

        ``devices`` are the devices that were attached before deletion; they
        are detached relationally and need no per-member removal since both
        device sets are deleted outright.
        """
        return await self.apply(plan_home_deleted(home, user_ids), mutation="home_deleted")

    async def on_homes_bulk_disabled(
        self, memberships: Sequence[HomeMembership]
    ) -> ConvergenceReport:
        return await self._apply_bulk_state(
            memberships, disabled=True, mutation="homes_bulk_disabled"
        )

    async def on_homes_bulk_enabled(
        self, memberships: Sequence[HomeMembership]
    ) -> ConvergenceReport:
        return await self._apply_bulk_state(
            memberships, disabled=False, mutation="homes_bulk_enabled"
        )

    async def _apply_bulk_state(
        self, memberships: Sequence[HomeMembership], *, disabled: bool, mutation: str
    ) -> ConvergenceReport:
        # Each home converges independently; one home's failure never skips another
        plans = plan_homes_bulk_state(memberships, disabled)
        reports = await bounded_gather(
            [self.apply(plan, mutation=mutation) for plan in plans],
            limit=self._fanout_limit,
        )
        return ConvergenceReport.combine(mutation, reports)

    # -------------------------------------------------------------------------
    # User-home links
    # -------------------------------------------------------------------------

    async def on_user_home_linked(
        self, user_id: str, home_id: str, home_enabled: bool
    ) -> ConvergenceReport:
        plan = plan_user_home_linked(user_id, home_id, home_enabled)
        return await self.apply(plan, mutation="user_home_linked")

    async def on_user_home_unlinked(
        self, user_id: str, home_id: str, home_enabled: bool
    ) -> ConvergenceReport:
        plan = plan_user_home_unlinked(user_id, home_id, home_enabled)
        return await self.apply(plan, mutation="user_home_unlinked")

    async def on_bulk_link(
        self,
        homes: Sequence[HomeSnapshot],
        attach_user_ids: Sequence[str],
        detach_user_ids: Sequence[str],
    ) -> ConvergenceReport:
        plan = plan_bulk_link(homes, attach_user_ids, detach_user_ids)
        return await self.apply(plan, mutation="bulk_link")

    async def on_user_bulk_link(
        self,
        user_ids: Sequence[str],
        homes_to_attach: Sequence[HomeSnapshot],
        homes_to_detach: Sequence[HomeSnapshot],
    ) -> ConvergenceReport:
        plan = plan_user_bulk_link(user_ids, homes_to_attach, homes_to_detach)
        return await self.apply(plan, mutation="user_bulk_link")

    async def on_user_deleted(self, user_id: str) -> ConvergenceReport:
        return await self.apply(plan_user_deleted(user_id), mutation="user_deleted")

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    async def on_device_created(
        self, device: DeviceRef, home: HomeSnapshot | None
    ) -> ConvergenceReport:
        return await self.apply(plan_device_created(device, home), mutation="device_created")

    async def on_device_updated(
        self,
        previous: DeviceRef,
        previous_home: HomeSnapshot | None,
        updated: DeviceRef,
        updated_home: HomeSnapshot | None,
    ) -> ConvergenceReport:
        plan = plan_device_updated(previous, previous_home, updated, updated_home)
        return await self.apply(plan, mutation="device_updated")

    async def on_device_deleted(
        self, device: DeviceRef, home: HomeSnapshot | None
    ) -> ConvergenceReport:
        return await self.apply(plan_device_deleted(device, home), mutation="device_deleted")


# Global engine instance
_index_sync_engine: IndexSyncEngine | None = None


async def get_index_sync_engine(cache: IndexCacheProtocol | None = None) -> IndexSyncEngine:
    """Get or create the global synchronization engine.

    Args:
        cache: Index cache backend (used only on first call; defaults to
            get_index_cache())

    Returns:
        IndexSyncEngine singleton instance
    """
    global _index_sync_engine  # noqa: PLW0603

    if _index_sync_engine is None:
        _index_sync_engine = IndexSyncEngine(cache or await get_index_cache())

    return _index_sync_engine


def reset_index_sync_engine() -> None:
    """Reset the global synchronization engine (for testing)."""
    global _index_sync_engine  # noqa: PLW0603
    _index_sync_engine = None
