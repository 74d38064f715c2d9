"""Tests for battery status and sensor start uploads."""

from __future__ import annotations

import httpx
import pytest

from src.nightscout.base import DeviceStatus, Sensor, TransmitterBatteryInfo
from src.nightscout.gateway import DEVICE_STATUS_PATH, TREATMENTS_PATH, NightscoutGateway
from src.nightscout.settings import SettingsStore
from src.nightscout.sync.status import StatusUploader, build_device_status
from src.nightscout.tests.conftest import NOW, FakeNightscout, InMemoryDataAccess


@pytest.fixture
def uploader(
    data: InMemoryDataAccess, store: SettingsStore, gateway: NightscoutGateway
) -> StatusUploader:
    return StatusUploader(data, store, gateway)


class TestDeviceStatusPayload:
    def test_generic_battery_reported_as_transmitter(self) -> None:
        status = DeviceStatus(TransmitterBatteryInfo("battery", 80), uploader_battery_level=0.5)
        assert build_device_status(status) == {"uploader": {"name": "transmitter", "battery": 80}}

    def test_voltage_added_next_to_uploader_level(self) -> None:
        status = DeviceStatus(
            TransmitterBatteryInfo("batteryVoltage", 310), uploader_battery_level=0.73
        )
        assert build_device_status(status) == {
            "uploader": {"name": "transmitter", "battery": 73, "batteryVoltage": 310}
        }


class TestBatteryUpload:
    @pytest.mark.asyncio
    async def test_uploads_once_until_changed(
        self, uploader: StatusUploader, data: InMemoryDataAccess, site: FakeNightscout
    ) -> None:
        data.status = DeviceStatus(TransmitterBatteryInfo("battery", 80), 0.9)

        await uploader.upload_battery()
        await uploader.upload_battery()
        assert len(site.sent("POST", DEVICE_STATUS_PATH)) == 1

        data.status = DeviceStatus(TransmitterBatteryInfo("battery", 79), 0.9)
        await uploader.upload_battery()
        assert len(site.sent("POST", DEVICE_STATUS_PATH)) == 2

    @pytest.mark.asyncio
    async def test_uploader_level_change_triggers_upload(
        self, uploader: StatusUploader, data: InMemoryDataAccess, site: FakeNightscout
    ) -> None:
        data.status = DeviceStatus(TransmitterBatteryInfo("batteryVoltage", 310), 0.9)
        await uploader.upload_battery()
        data.status = DeviceStatus(TransmitterBatteryInfo("batteryVoltage", 310), 0.8)
        await uploader.upload_battery()
        assert len(site.sent("POST", DEVICE_STATUS_PATH)) == 2

    @pytest.mark.asyncio
    async def test_failed_upload_retried(
        self, uploader: StatusUploader, data: InMemoryDataAccess, site: FakeNightscout
    ) -> None:
        data.status = DeviceStatus(TransmitterBatteryInfo("battery", 80), 0.9)
        site.respond("POST", DEVICE_STATUS_PATH, httpx.Response(500, text="boom"))

        assert not (await uploader.upload_battery()).success
        assert (await uploader.upload_battery()).success
        assert len(site.sent("POST", DEVICE_STATUS_PATH)) == 2

    @pytest.mark.asyncio
    async def test_no_transmitter_battery_no_request(
        self, uploader: StatusUploader, site: FakeNightscout
    ) -> None:
        assert (await uploader.upload_battery()).success
        assert site.requests == []


class TestSensorStartUpload:
    @pytest.mark.asyncio
    async def test_sensor_start_uploaded_once(
        self, uploader: StatusUploader, data: InMemoryDataAccess, site: FakeNightscout
    ) -> None:
        data.sensor = Sensor(sensor_id="s-1", start_date=NOW)

        assert (await uploader.upload_sensor_start()).success
        await uploader.upload_sensor_start()

        bodies = site.bodies("POST", TREATMENTS_PATH)
        assert len(bodies) == 1
        assert bodies[0]["eventType"] == "Sensor Start"
        assert bodies[0]["_id"] == "s-1"
        assert data.sensor.uploaded_to_remote is True

    @pytest.mark.asyncio
    async def test_disabled_by_setting(
        self, uploader: StatusUploader, data: InMemoryDataAccess, store: SettingsStore,
        site: FakeNightscout,
    ) -> None:
        store.update(upload_sensor_start=False)
        data.sensor = Sensor(sensor_id="s-1", start_date=NOW)

        await uploader.upload_sensor_start()

        assert site.requests == []
        assert data.sensor.uploaded_to_remote is False

    @pytest.mark.asyncio
    async def test_failure_keeps_flag_unset(
        self, uploader: StatusUploader, data: InMemoryDataAccess, site: FakeNightscout
    ) -> None:
        site.respond("POST", TREATMENTS_PATH, httpx.Response(500, text="boom"))
        data.sensor = Sensor(sensor_id="s-1", start_date=NOW)

        assert not (await uploader.upload_sensor_start()).success
        assert data.sensor.uploaded_to_remote is False
