"""One-way upload of calibrations to ``/api/v1/entries``.

Each calibration is sent as two entries: a ``cal`` record (slope and
intercept) and an ``mbg`` record (the finger-stick value).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from src.nightscout.base import DataAccess, SyncOutcome, utc_now
from src.nightscout.config_loader import SyncConfig, get_sync_config
from src.nightscout.gateway import ENTRIES_PATH, NightscoutError, NightscoutGateway
from src.nightscout.settings import ConfigProvider

logger = logging.getLogger("nightscout.sync.calibrations")


class CalibrationsUploader:
    def __init__(
        self,
        data_access: DataAccess,
        config_provider: ConfigProvider,
        gateway: NightscoutGateway,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._data = data_access
        self._provider = config_provider
        self._gateway = gateway
        self._config = (sync_config or get_sync_config()).calibrations
        self._clock = clock

    async def upload(self) -> SyncOutcome:
        """Upload calibrations after ``last_uploaded_calibration_time``."""
        state = self._provider.state()
        lower_bound = state.last_uploaded_calibration_time or (
            self._clock() - self._config.max_age
        )

        calibrations = await self._data.calibrations_after(lower_bound)
        if not calibrations:
            logger.debug("No calibrations to upload")
            return SyncOutcome.succeeded()

        payload = [c.to_cal_record() for c in calibrations] + [
            c.to_mbg_record() for c in calibrations
        ]
        logger.info("Uploading %d calibrations", len(calibrations))
        try:
            await self._gateway.upload(ENTRIES_PATH, payload, duplicate_is_success=True)
        except NightscoutError as exc:
            logger.warning("Calibrations upload failed: %s", exc)
            return SyncOutcome.failed()

        state = self._provider.state()
        state.last_uploaded_calibration_time = calibrations[0].timestamp
        self._provider.save_state()
        return SyncOutcome.succeeded()
