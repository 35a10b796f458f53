"""Integration tests for DeviceService on a temporary SQLite database."""

from __future__ import annotations

import pytest

from homesync.core.exceptions import (
    AuthorizationError,
    DuplicateResourceError,
    InvalidInputError,
    ResourceNotFoundError,
)
from homesync.models.enums import IndexFamily
from homesync.repositories import DeviceRepository
from homesync.services import DeviceService, HomeService
from homesync.tests.factories import HomeFactory

pytestmark = pytest.mark.integration

ID = IndexFamily.DEVICE_BY_HOME_ID
UNIQUE = IndexFamily.DEVICE_BY_HOME_UNIQUE_KEY


@pytest.fixture
def home_service(db_session, organization, sync_engine) -> HomeService:
    return HomeService(db_session, organization.id, sync_engine)


@pytest.fixture
def device_service(db_session, organization, sync_engine) -> DeviceService:
    return DeviceService(db_session, organization.id, sync_engine)


@pytest.fixture
async def home(home_service):
    return (await home_service.create_home("kitchen", "Kitchen")).value


@pytest.fixture
async def second_home(home_service):
    return (await home_service.create_home("garage", "Garage")).value


class TestCreateDevice:
    @pytest.mark.asyncio
    async def test_device_in_enabled_home_is_indexed(self, device_service, home, index_cache):
        result = await device_service.create_device("sensor-1", "Sensor", home_id=home.id)

        assert result.converged
        assert result.value.home_id == home.id
        assert await index_cache.list_members(ID, home.id) == {result.value.id}
        assert await index_cache.list_members(UNIQUE, "kitchen") == {"sensor-1"}

    @pytest.mark.asyncio
    async def test_device_in_disabled_home_is_not_indexed(
        self, device_service, home_service, index_cache
    ):
        disabled = (await home_service.create_home("attic", "Attic", disabled=True)).value

        result = await device_service.create_device("sensor-1", "Sensor", home_id=disabled.id)

        assert result.convergence.attempted == []
        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_unattached_device(self, device_service, index_cache):
        result = await device_service.create_device("sensor-1", "Sensor")

        assert result.value.home_id is None
        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_duplicate_unique_id(self, device_service):
        await device_service.create_device("sensor-1", "Sensor")

        with pytest.raises(DuplicateResourceError):
            await device_service.create_device("sensor-1", "Other sensor")

    @pytest.mark.asyncio
    async def test_home_of_other_organization(
        self, device_service, seed, other_organization, index_cache
    ):
        await seed(HomeFactory(id="theirs", organization_id=other_organization.id))

        with pytest.raises(AuthorizationError):
            await device_service.create_device("sensor-1", "Sensor", home_id="theirs")

        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_unknown_home(self, device_service):
        with pytest.raises(ResourceNotFoundError):
            await device_service.create_device("sensor-1", "Sensor", home_id="missing")


class TestUpdateDevice:
    @pytest.mark.asyncio
    async def test_move_between_homes(self, device_service, home, second_home, index_cache):
        device = (await device_service.create_device("sensor-1", "S", home_id=home.id)).value

        result = await device_service.update_device(device.id, home_id=second_home.id)

        assert result.converged
        assert result.value.home_id == second_home.id
        assert await index_cache.list_members(ID, home.id) == set()
        assert await index_cache.list_members(UNIQUE, "kitchen") == set()
        assert await index_cache.list_members(ID, second_home.id) == {device.id}
        assert await index_cache.list_members(UNIQUE, "garage") == {"sensor-1"}

    @pytest.mark.asyncio
    async def test_rename_within_home(self, device_service, home, index_cache):
        keep = (await device_service.create_device("sensor-0", "S0", home_id=home.id)).value
        device = (await device_service.create_device("sensor-1", "S1", home_id=home.id)).value

        await device_service.update_device(device.id, unique_id="sensor-1b")

        assert await index_cache.list_members(ID, home.id) == {keep.id, device.id}
        assert await index_cache.list_members(UNIQUE, "kitchen") == {"sensor-0", "sensor-1b"}

    @pytest.mark.asyncio
    async def test_detach_from_home(self, device_service, home, index_cache):
        device = (await device_service.create_device("sensor-1", "S", home_id=home.id)).value

        result = await device_service.update_device(device.id, detach_home=True)

        assert result.value.home_id is None
        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_move_into_disabled_home(
        self, device_service, home_service, home, index_cache
    ):
        disabled = (await home_service.create_home("attic", "Attic", disabled=True)).value
        device = (await device_service.create_device("sensor-1", "S", home_id=home.id)).value

        await device_service.update_device(device.id, home_id=disabled.id)

        assert len(index_cache) == 0

    @pytest.mark.asyncio
    async def test_home_and_detach_are_exclusive(self, device_service, home):
        device = (await device_service.create_device("sensor-1", "S", home_id=home.id)).value

        with pytest.raises(InvalidInputError):
            await device_service.update_device(device.id, home_id=home.id, detach_home=True)

    @pytest.mark.asyncio
    async def test_unknown_device(self, device_service):
        with pytest.raises(ResourceNotFoundError):
            await device_service.update_device("missing", name="x")


class TestDeleteDevice:
    @pytest.mark.asyncio
    async def test_removes_device_from_home_index(
        self, device_service, home, index_cache, db_session
    ):
        keep = (await device_service.create_device("sensor-0", "S0", home_id=home.id)).value
        device = (await device_service.create_device("sensor-1", "S1", home_id=home.id)).value

        result = await device_service.delete_device(device.id)

        assert result.converged
        assert result.value.unique_id == "sensor-1"
        assert await DeviceRepository(db_session).get_by_id(device.id) is None
        assert await index_cache.list_members(ID, home.id) == {keep.id}
        assert await index_cache.list_members(UNIQUE, "kitchen") == {"sensor-0"}

    @pytest.mark.asyncio
    async def test_delete_unattached_device(self, device_service, index_cache):
        device = (await device_service.create_device("sensor-1", "S")).value

        result = await device_service.delete_device(device.id)

        assert result.convergence.attempted == []
