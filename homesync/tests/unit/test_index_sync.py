"""Unit tests for IndexSyncEngine against the in-memory index cache.

Covers enable/disable round-trips, user visibility, bulk linking,
rename-and-disable, cache failure during enable, idempotence of bulk enable,
rename migration and failure reporting.
"""

import asyncio
import logging

import pytest

from homesync.core.metrics import INDEX_CONVERGENCE_FAILURES_TOTAL, INDEX_OPERATIONS_TOTAL
from homesync.models.enums import IndexFamily
from homesync.services.index_cache import InMemoryIndexCache
from homesync.services.index_sync import (
    ConvergenceReport,
    DeviceRef,
    HomeMembership,
    HomeSnapshot,
    IndexPlan,
    IndexSyncEngine,
    get_index_sync_engine,
    reset_index_sync_engine,
)
from homesync.tests.mock_utils import FlakyIndexCache

pytestmark = pytest.mark.unit

ID = IndexFamily.DEVICE_BY_HOME_ID
UNIQUE = IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY
USER = IndexFamily.HOME_BY_USER_ID

D1 = DeviceRef("d1", "dev-uid-1")
D2 = DeviceRef("d2", "dev-uid-2")


async def materialize(engine: IndexSyncEngine, home: HomeSnapshot, devices, user_ids=()):
    """Bring an enabled home's entries into the cache by enabling it from disabled."""
    disabled = HomeSnapshot(home.id, home.unique_id, disabled=True)
    report = await engine.on_home_updated(disabled, home, list(devices), list(user_ids))
    assert report.converged


# =============================================================================
# Enable, link and rename flows
# =============================================================================


class TestIndexFlows:
    @pytest.mark.asyncio
    async def test_disable_then_reenable_restores_device_sets(
        self, sync_engine, index_cache
    ):
        h1 = HomeSnapshot("H1", "abc")
        await materialize(sync_engine, h1, [D1, D2])

        disabled = HomeSnapshot("H1", "abc", disabled=True)
        await sync_engine.on_home_updated(h1, disabled, [D1, D2], [])

        assert await index_cache.list_members(ID, "H1") == set()
        assert await index_cache.list_members(UNIQUE, "abc") == set()

        report = await sync_engine.on_home_updated(disabled, h1, [D1, D2], [])

        assert report.converged
        assert await index_cache.list_members(ID, "H1") == {"d1", "d2"}
        assert await index_cache.list_members(UNIQUE, "abc") == {"dev-uid-1", "dev-uid-2"}

    @pytest.mark.asyncio
    async def test_disable_hides_home_from_linked_user(self, sync_engine, index_cache):
        h1 = HomeSnapshot("H1", "abc")
        disabled = HomeSnapshot("H1", "abc", disabled=True)
        await sync_engine.on_user_home_linked("U1", "H1", home_enabled=True)
        assert await index_cache.list_members(USER, "U1") == {"H1"}

        await sync_engine.on_home_updated(h1, disabled, [], ["U1"])
        assert await index_cache.list_members(USER, "U1") == set()

        # The link still exists relationally, so re-enabling restores visibility
        await sync_engine.on_home_updated(disabled, h1, [], ["U1"])
        assert await index_cache.list_members(USER, "U1") == {"H1"}

    @pytest.mark.asyncio
    async def test_bulk_link_attaches_and_detaches(self, sync_engine, index_cache):
        await sync_engine.on_user_home_linked("u3", "H1", home_enabled=True)
        await sync_engine.on_user_home_linked("u3", "H2", home_enabled=True)

        report = await sync_engine.on_bulk_link(
            [HomeSnapshot("H1", "a"), HomeSnapshot("H2", "b")],
            ["u1", "u2"],
            ["u3"],
        )

        assert report.converged
        assert await index_cache.list_members(USER, "u1") == {"H1", "H2"}
        assert await index_cache.list_members(USER, "u2") == {"H1", "H2"}
        assert await index_cache.list_members(USER, "u3") == set()

    @pytest.mark.asyncio
    async def test_rename_and_disable_leaves_no_device_entries(
        self, sync_engine, index_cache
    ):
        h2 = HomeSnapshot("H2", "old-uid")
        await materialize(sync_engine, h2, [D1, D2], ["U1"])

        report = await sync_engine.on_home_updated(
            h2, HomeSnapshot("H2", "new-uid", disabled=True), [D1, D2], ["U1"]
        )

        assert report.converged
        # Observed outcome: old key, new key and id key are all absent
        assert await index_cache.list_members(UNIQUE, "old-uid") == set()
        assert await index_cache.list_members(UNIQUE, "new-uid") == set()
        assert await index_cache.list_members(ID, "H2") == set()
        assert await index_cache.list_members(USER, "U1") == set()
        assert index_cache.storage_keys() == []

    @pytest.mark.asyncio
    async def test_cache_failure_during_enable_is_reported(self, caplog):
        cache = FlakyIndexCache(fail_families=[ID], fail_operations=["add_member"])
        engine = IndexSyncEngine(cache)
        disabled = HomeSnapshot("H1", "abc", disabled=True)

        with caplog.at_level(logging.ERROR, logger="homesync.services.index_sync"):
            report = await engine.on_home_updated(disabled, HomeSnapshot("H1", "abc"), [D1, D2], [])

        # The divergence is observable: the id set stays empty and the report says so
        assert await cache.list_members(ID, "H1") == set()
        assert await cache.list_members(UNIQUE, "abc") == {"dev-uid-1", "dev-uid-2"}
        assert not report.converged
        assert len(report.failures) == 2
        assert report.indeterminate_keys == [(ID, "H1")]
        assert any(
            getattr(record, "index_family", None) == "device-by-home-id"
            for record in caplog.records
        )


# =============================================================================
# Idempotence and rename migration
# =============================================================================


class TestIdempotenceAndRename:
    @pytest.mark.asyncio
    async def test_bulk_enable_twice_equals_once(self, index_cache):
        engine = IndexSyncEngine(index_cache)
        memberships = [
            HomeMembership(HomeSnapshot("H1", "abc", disabled=True), (D1, D2), ("U1",)),
        ]

        await engine.on_homes_bulk_enabled(memberships)
        once = {key: set(index_cache._sets[key]) for key in index_cache.storage_keys()}
        await engine.on_homes_bulk_enabled(memberships)
        twice = {key: set(index_cache._sets[key]) for key in index_cache.storage_keys()}

        assert once == twice
        assert await index_cache.list_members(USER, "U1") == {"H1"}

    @pytest.mark.asyncio
    async def test_rename_migrates_unique_key_set(self, sync_engine, index_cache):
        h1 = HomeSnapshot("H1", "abc")
        await materialize(sync_engine, h1, [D1, D2])

        await sync_engine.on_home_updated(h1, HomeSnapshot("H1", "xyz"), [D1, D2], [])

        assert await index_cache.list_members(UNIQUE, "abc") == set()
        assert await index_cache.list_members(UNIQUE, "xyz") == {"dev-uid-1", "dev-uid-2"}
        assert await index_cache.list_members(ID, "H1") == {"d1", "d2"}


# =============================================================================
# Engine behaviour
# =============================================================================


class TestIndexSyncEngine:
    @pytest.mark.asyncio
    async def test_empty_plan_issues_nothing(self, index_cache):
        engine = IndexSyncEngine(index_cache)
        report = await engine.on_home_created(HomeSnapshot("H1", "abc"))

        assert report.converged
        assert report.attempted == []
        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_retire_phase_completes_before_materialize_phase(self):
        cache = FlakyIndexCache()
        cache.failing = False
        engine = IndexSyncEngine(cache)

        await engine.on_home_updated(
            HomeSnapshot("H1", "abc"), HomeSnapshot("H1", "xyz"), [D1], []
        )

        kinds = [call[0] for call in cache.calls]
        assert kinds[0] == "delete_key"
        assert set(kinds[1:]) == {"add_member"}

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_remaining_operations(self):
        cache = FlakyIndexCache(fail_families=[UNIQUE])
        engine = IndexSyncEngine(cache)

        report = await engine.on_homes_bulk_disabled(
            [
                HomeMembership(HomeSnapshot("H1", "a"), (D1,), ("U1",)),
                HomeMembership(HomeSnapshot("H2", "b"), (D2,), ("U1",)),
            ]
        )

        assert not report.converged
        assert {failure.operation.key for failure in report.failures} == {"a", "b"}
        # Every other operation of both homes was still attempted
        assert len(report.attempted) == 6
        assert ("remove_member", USER, "U1", "H1") in cache.calls
        assert ("remove_member", USER, "U1", "H2") in cache.calls

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_are_reported_not_raised(self):
        class BrokenCache(InMemoryIndexCache):
            async def delete_key(self, family, key):
                raise RuntimeError("connection reset")

        engine = IndexSyncEngine(BrokenCache())
        report = await engine.on_user_deleted("U1")

        assert not report.converged
        assert report.failures[0].error == "connection reset"

    @pytest.mark.asyncio
    async def test_fanout_limit_bounds_concurrency(self):
        in_flight = 0
        peak = 0

        class SlowCache(InMemoryIndexCache):
            async def add_member(self, family, key, member):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.001)
                in_flight -= 1
                await super().add_member(family, key, member)

        engine = IndexSyncEngine(SlowCache(), fanout_limit=3)
        devices = [DeviceRef(f"d{i}", f"uid-{i}") for i in range(10)]

        report = await engine.on_device_created(devices[0], HomeSnapshot("H1", "abc"))
        assert report.converged
        await engine.on_homes_bulk_enabled(
            [HomeMembership(HomeSnapshot("H2", "def", disabled=True), tuple(devices))]
        )

        assert peak <= 3

    @pytest.mark.asyncio
    async def test_fanout_limit_is_shared_across_concurrent_plans(self):
        in_flight = 0
        peak = 0

        class SlowCache(InMemoryIndexCache):
            async def add_member(self, family, key, member):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.001)
                in_flight -= 1
                await super().add_member(family, key, member)

        cache = SlowCache()
        engine = IndexSyncEngine(cache, fanout_limit=4)
        memberships = [
            HomeMembership(
                HomeSnapshot(f"H{h}", f"home-{h}", disabled=True),
                tuple(DeviceRef(f"h{h}-d{i}", f"h{h}-uid-{i}") for i in range(5)),
                (f"u{h}",),
            )
            for h in range(6)
        ]

        bulk, single = await asyncio.gather(
            engine.on_homes_bulk_enabled(memberships),
            engine.on_user_home_linked("u-other", "H-other", home_enabled=True),
        )

        assert bulk.converged
        assert single.converged
        assert len(bulk.attempted) == 6 * 11
        assert peak <= 4
        assert await cache.list_members(ID, "H5") == {f"h5-d{i}" for i in range(5)}

    @pytest.mark.asyncio
    async def test_records_operation_metrics(self, sync_engine):
        counter = INDEX_OPERATIONS_TOTAL.labels(family="home-by-user-id", operation="add_member")
        before = counter._value.get()

        await sync_engine.on_user_home_linked("U1", "H1", home_enabled=True)

        assert counter._value.get() == before + 1

    @pytest.mark.asyncio
    async def test_records_failure_metrics(self):
        counter = INDEX_CONVERGENCE_FAILURES_TOTAL.labels(
            family="home-by-user-id", operation="delete_key"
        )
        before = counter._value.get()

        await IndexSyncEngine(FlakyIndexCache()).on_user_deleted("U1")

        assert counter._value.get() == before + 1

    @pytest.mark.asyncio
    async def test_apply_custom_plan(self, sync_engine, index_cache):
        plan = IndexPlan()
        plan.add_member(ID, "H9", "d9")

        report = await sync_engine.apply(plan, mutation="manual")

        assert report.mutation == "manual"
        assert await index_cache.list_members(ID, "H9") == {"d9"}

    @pytest.mark.asyncio
    async def test_device_lifecycle(self, sync_engine, index_cache):
        h1 = HomeSnapshot("H1", "a")
        h2 = HomeSnapshot("H2", "b")

        await sync_engine.on_device_created(D1, h1)
        assert await index_cache.list_members(ID, "H1") == {"d1"}

        await sync_engine.on_device_updated(D1, h1, D1, h2)
        assert await index_cache.list_members(ID, "H1") == set()
        assert await index_cache.list_members(UNIQUE, "b") == {"dev-uid-1"}

        await sync_engine.on_device_deleted(D1, h2)
        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_home_deleted_clears_all_entries(self, sync_engine, index_cache):
        h1 = HomeSnapshot("H1", "abc")
        await materialize(sync_engine, h1, [D1], ["U1", "U2"])

        await sync_engine.on_home_deleted(h1, [D1], ["U1", "U2"])

        assert len(index_cache) == 0


class TestConvergenceReport:
    def test_combine(self):
        first = ConvergenceReport(mutation="a", duration_seconds=0.5)
        second = ConvergenceReport(mutation="b", duration_seconds=0.2)

        combined = ConvergenceReport.combine("both", [first, second])

        assert combined.mutation == "both"
        assert combined.converged
        assert combined.duration_seconds == 0.5


class TestEngineSingleton:
    @pytest.mark.asyncio
    async def test_uses_memory_backend_from_settings(self):
        engine = await get_index_sync_engine()

        assert isinstance(engine.cache, InMemoryIndexCache)
        assert await get_index_sync_engine() is engine

    @pytest.mark.asyncio
    async def test_reset(self, index_cache):
        first = await get_index_sync_engine(index_cache)
        reset_index_sync_engine()
        second = await get_index_sync_engine(index_cache)

        assert first is not second
        assert second.cache is index_cache
