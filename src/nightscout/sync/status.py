"""Device status (battery) and sensor start uploads."""

from __future__ import annotations

import logging
from typing import Any

from src.nightscout.base import DataAccess, DeviceStatus, SyncOutcome, TransmitterBatteryInfo
from src.nightscout.gateway import (
    DEVICE_STATUS_PATH,
    TREATMENTS_PATH,
    NightscoutError,
    NightscoutGateway,
)
from src.nightscout.settings import ConfigProvider

logger = logging.getLogger("nightscout.sync.status")


def build_device_status(status: DeviceStatus) -> dict[str, Any]:
    """Build the ``/api/v1/devicestatus`` document.

    A transmitter reporting a generic ``battery`` level owns the ``battery``
    key.  Transmitters reporting another metric (e.g. ``batteryVoltage``)
    add it under its own key and ``battery`` carries the uploader's level
    in percent.
    """
    battery = status.transmitter_battery
    uploader: dict[str, Any] = {"name": "transmitter"}
    if battery is None or battery.key != "battery":
        level = status.uploader_battery_level
        uploader["battery"] = int(level * 100) if level is not None else None
        if battery is not None:
            uploader[battery.key] = battery.value
    else:
        uploader["battery"] = battery.value
    return {"uploader": uploader}


class StatusUploader:
    """Upload battery levels when they change, and the active sensor's start once.

    The last uploaded battery values are kept in memory only; after a
    restart the first sync uploads them again.
    """

    def __init__(
        self,
        data_access: DataAccess,
        config_provider: ConfigProvider,
        gateway: NightscoutGateway,
    ) -> None:
        self._data = data_access
        self._provider = config_provider
        self._gateway = gateway
        self._last_transmitter_battery: TransmitterBatteryInfo | None = None
        self._last_uploader_level: float | None = None

    async def upload(self) -> SyncOutcome:
        battery = await self.upload_battery()
        sensor = await self.upload_sensor_start()
        if battery.success and sensor.success:
            return SyncOutcome.succeeded()
        return SyncOutcome.failed()

    async def upload_battery(self) -> SyncOutcome:
        status = await self._data.device_status()
        if status.transmitter_battery is None:
            return SyncOutcome.succeeded()
        if (
            status.transmitter_battery == self._last_transmitter_battery
            and status.uploader_battery_level == self._last_uploader_level
        ):
            logger.debug("Battery levels unchanged, not uploading")
            return SyncOutcome.succeeded()

        try:
            await self._gateway.upload(DEVICE_STATUS_PATH, build_device_status(status))
        except NightscoutError as exc:
            logger.warning("Device status upload failed: %s", exc)
            return SyncOutcome.failed()

        self._last_transmitter_battery = status.transmitter_battery
        self._last_uploader_level = status.uploader_battery_level
        logger.info("Uploaded transmitter battery %s", status.transmitter_battery)
        return SyncOutcome.succeeded()

    async def upload_sensor_start(self) -> SyncOutcome:
        if not self._provider.settings().upload_sensor_start:
            return SyncOutcome.succeeded()
        sensor = await self._data.active_sensor()
        if sensor is None or sensor.uploaded_to_remote:
            return SyncOutcome.succeeded()

        try:
            await self._gateway.upload(TREATMENTS_PATH, sensor.to_sensor_start())
        except NightscoutError as exc:
            logger.warning("Sensor start upload failed for %s: %s", sensor.sensor_id, exc)
            return SyncOutcome.failed()

        async with self._data.write() as session:
            sensor.uploaded_to_remote = True
            await session.save_sensor(sensor)
        logger.info("Uploaded sensor start for %s", sensor.sensor_id)
        return SyncOutcome.succeeded()
