"""One-way upload of glucose readings to ``/api/v1/entries``.

Pending readings are those after the upload watermark, limited to the last
``max_upload_days``.  They are thinned to one reading per
``min_spacing_minutes`` and sent in batches of at most ``max_batch_size``,
oldest batch first, so a large backlog is uploaded in consecutive passes
and the watermark only ever advances over data the site accepted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from src.nightscout.base import DataAccess, Reading, SyncOutcome, utc_now
from src.nightscout.config_loader import SyncConfig, get_sync_config
from src.nightscout.gateway import ENTRIES_PATH, NightscoutError, NightscoutGateway
from src.nightscout.settings import ConfigProvider

logger = logging.getLogger("nightscout.sync.readings")


def filter_min_spacing(
    readings: Sequence[Reading],
    min_spacing: timedelta,
    connection_changes: Iterable[datetime] = (),
) -> list[Reading]:
    """Drop readings that follow the previous kept reading too closely.

    ``readings`` must be ordered oldest first; the result keeps that order.
    The first reading is always kept and becomes the spacing anchor.  A
    later reading is kept, and becomes the new anchor, when it is at least
    ``min_spacing`` after the anchor.  A reading closer than that is still
    kept when a connection change happened since the previous reading; the
    change is consumed by that reading and the anchor does not move.

    Example with ``min_spacing`` 4.75 min and a change at t=1.5::

        t = 0, 1, 2, 3, 5  ->  kept 0, 2, 5
    """
    changes = sorted(connection_changes)
    next_change = 0
    anchor: datetime | None = None
    kept: list[Reading] = []

    for reading in readings:
        changed = False
        while next_change < len(changes) and changes[next_change] <= reading.timestamp:
            changed = True
            next_change += 1

        if anchor is None or reading.timestamp - anchor >= min_spacing:
            kept.append(reading)
            anchor = reading.timestamp
        elif changed:
            kept.append(reading)

    return kept


class ReadingsUploader:
    """Upload pending readings and advance ``last_uploaded_reading_time``."""

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
        self._config = (sync_config or get_sync_config()).readings
        self._clock = clock

    async def select_batch(
        self, connection_changes: Iterable[datetime] = ()
    ) -> tuple[list[Reading], bool]:
        """Return the next batch (newest first) and whether more remain after it."""
        lower_bound = self._clock() - self._config.max_age
        watermark = self._provider.state().last_uploaded_reading_time
        if watermark is not None and watermark > lower_bound:
            lower_bound = watermark

        newest_first = await self._data.readings_after(lower_bound)
        kept = filter_min_spacing(
            list(reversed(newest_first)), self._config.min_spacing, connection_changes
        )
        kept.reverse()

        cap = self._config.max_batch_size
        call_again = len(kept) > cap
        if call_again:
            logger.info("Restricting readings upload to %d of %d", cap, len(kept))
        return kept[-cap:], call_again

    async def upload(self, connection_changes: Iterable[datetime] = ()) -> SyncOutcome:
        """Upload all pending readings, one batch per request.

        Returns ``failed`` if any batch is rejected; batches uploaded before
        the failure keep their advanced watermark.
        """
        changes = list(connection_changes)
        while True:
            batch, call_again = await self.select_batch(changes)
            if not batch:
                logger.debug("No readings to upload")
                return SyncOutcome.succeeded()

            logger.info("Uploading %d readings", len(batch))
            try:
                await self._gateway.upload(
                    ENTRIES_PATH,
                    [reading.to_nightscout() for reading in batch],
                    duplicate_is_success=True,
                )
            except NightscoutError as exc:
                logger.warning("Readings upload failed: %s", exc)
                return SyncOutcome.failed()

            state = self._provider.state()
            previous = state.last_uploaded_reading_time
            state.last_uploaded_reading_time = batch[0].timestamp
            self._provider.save_state()
            logger.info("Readings uploaded up to %s", batch[0].timestamp.isoformat())

            if not call_again:
                return SyncOutcome.succeeded()
            if previous is not None and batch[0].timestamp <= previous:
                logger.warning("Readings watermark did not advance, stopping at %s", previous)
                return SyncOutcome.succeeded()
