"""Two-way treatment sync with ``/api/v1/treatments``.

One sync runs these stages strictly in order:

    selecting_pending -> uploading_new -> updating_changed -> downloading -> reconciling

New treatments are POSTed as one batch and receive their server ids from the
response.  Locally edited treatments are PUT one at a time.  The latest
treatments are then downloaded and merged back: ids lost by an interrupted
upload are recovered by content, server-side edits are applied to confirmed
treatments, and treatments created elsewhere are added locally.
"""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Any

from src.nightscout.base import (
    DataAccess,
    SyncOutcome,
    Treatment,
    TreatmentRecord,
    WriteSession,
)
from src.nightscout.config_loader import SyncConfig, get_sync_config
from src.nightscout.gateway import (
    TREATMENTS_PATH,
    DecodeError,
    NightscoutError,
    NightscoutGateway,
)
from src.nightscout.sync.reconcile import (
    apply_server_edits,
    assign_remote_ids,
    same_content,
)

logger = logging.getLogger("nightscout.sync.treatments")


class TreatmentsStage(str, Enum):
    idle = "idle"
    selecting_pending = "selecting_pending"
    uploading_new = "uploading_new"
    updating_changed = "updating_changed"
    downloading = "downloading"
    reconciling = "reconciling"


def parse_records(body: Any) -> list[TreatmentRecord]:
    """Parse a treatments response array, skipping unsupported documents.

    Raises:
        DecodeError: If the body is not a JSON array.
    """
    if not isinstance(body, list):
        raise DecodeError(f"Expected a JSON array of treatments, got {type(body).__name__}")
    records = []
    for item in body:
        record = TreatmentRecord.from_nightscout(item)
        if record is not None:
            records.append(record)
    return records


class TreatmentsSyncer:
    """Run the treatments pipeline against one Nightscout site."""

    def __init__(
        self,
        data_access: DataAccess,
        gateway: NightscoutGateway,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self._data = data_access
        self._gateway = gateway
        self._config = (sync_config or get_sync_config()).treatments
        self._stage = TreatmentsStage.idle

    @property
    def stage(self) -> TreatmentsStage:
        return self._stage

    async def sync(self) -> SyncOutcome:
        """Run all stages.

        Returns ``failed`` only when the download or its decoding fails;
        upload and update failures are logged and retried by the next sync.
        """
        try:
            self._stage = TreatmentsStage.selecting_pending
            latest = await self._data.latest_treatments(self._config.page_size)
            pending = [t for t in latest if not t.uploaded]
            new = [t for t in pending if not t.remote_id]
            changed = [t for t in pending if t.remote_id]
            logger.info("Treatments pending: %d new, %d changed", len(new), len(changed))

            self._stage = TreatmentsStage.uploading_new
            upload_outcome = await self.upload_new(new)
            logger.info("Upload of new treatments: %s", upload_outcome)

            self._stage = TreatmentsStage.updating_changed
            await self.update_changed(changed)

            self._stage = TreatmentsStage.downloading
            try:
                response = await self._gateway.fetch(
                    TREATMENTS_PATH, {"count": self._config.page_size}
                )
                records = parse_records(response.json())
            except NightscoutError as exc:
                logger.warning("Treatments download failed: %s", exc)
                return SyncOutcome.failed()
            logger.info("Downloaded %d treatments", len(records))

            self._stage = TreatmentsStage.reconciling
            return await self.reconcile(new, records)
        finally:
            self._stage = TreatmentsStage.idle

    async def upload_new(self, treatments: list[Treatment]) -> SyncOutcome:
        """POST never-uploaded treatments and store the ids the site assigned."""
        if not treatments:
            return SyncOutcome.succeeded()

        try:
            response = await self._gateway.upload(
                TREATMENTS_PATH,
                [t.to_nightscout() for t in treatments],
                duplicate_is_success=True,
            )
            if response.duplicate:
                # Ids are recovered from the download
                return SyncOutcome.succeeded()
            records = parse_records(response.json())
        except NightscoutError as exc:
            logger.warning("Upload of %d treatments failed: %s", len(treatments), exc)
            return SyncOutcome.failed()

        assigned = assign_remote_ids(
            treatments,
            records,
            self._config.match_time_tolerance,
            self._config.match_value_tolerance,
        )
        if assigned:
            async with self._data.write() as session:
                for treatment in assigned:
                    await self._confirm(session, treatment)
        if len(assigned) < len(treatments):
            logger.info(
                "%d of %d uploaded treatments not matched in the response",
                len(treatments) - len(assigned),
                len(treatments),
            )
        return SyncOutcome.succeeded()

    async def update_changed(self, treatments: list[Treatment]) -> int:
        """PUT locally edited treatments one at a time.

        Returns:
            Number of treatments the site accepted.
        """
        queue = deque(treatments)
        updated = 0
        while queue:
            treatment = queue.popleft()
            try:
                await self._gateway.upload(
                    TREATMENTS_PATH, treatment.to_nightscout(), method="PUT"
                )
            except NightscoutError as exc:
                logger.warning("Update of treatment %s failed: %s", treatment.remote_id, exc)
                continue
            async with self._data.write() as session:
                await self._confirm(session, treatment)
            updated += 1
        if treatments:
            logger.info("Updated %d of %d changed treatments", updated, len(treatments))
        return updated

    async def _confirm(self, session: WriteSession, sent: Treatment) -> None:
        """Record that ``sent`` reached the site under ``sent.remote_id``.

        The stored row is re-read inside the session.  If it was edited while
        the request was in flight it keeps the edit and stays unconfirmed, so
        the next sync sends it again.
        """
        current = await self._data.treatment_by_local_id(sent.local_id)
        if current is None:
            # Deleted in flight: the row stays deleted but learns its server id
            sent.uploaded = True
            await session.save_treatment(sent)
            return
        current.remote_id = sent.remote_id
        current.uploaded = same_content(current, sent)
        if not current.uploaded:
            logger.info("Treatment %s changed during upload, keeping the local edit", sent.local_id)
        await session.save_treatment(current)

    async def reconcile(
        self, unsent: list[Treatment], records: list[TreatmentRecord]
    ) -> SyncOutcome:
        """Merge downloaded ``records`` into local storage in one write session.

        Args:
            unsent:  Treatments that had no server id when the sync started.
            records: Downloaded server records.
        """
        async with self._data.write() as session:
            known: dict[str, Treatment] = {}
            for record in records:
                if record.remote_id in known:
                    continue
                local = await self._data.treatment_by_remote_id(record.remote_id)
                if local is not None:
                    known[record.remote_id] = local
            claimed = set(known)

            recovered = assign_remote_ids(
                unsent,
                records,
                self._config.match_time_tolerance,
                self._config.match_value_tolerance,
                claimed,
            )
            for treatment in recovered:
                await self._confirm(session, treatment)
            edited = apply_server_edits(known.values(), records)
            for treatment in edited:
                await session.save_treatment(treatment)

            created = 0
            for record in records:
                if record.remote_id in claimed:
                    continue
                claimed.add(record.remote_id)
                await session.add_treatment(record.as_treatment())
                created += 1

        logger.info(
            "Reconciled treatments: %d new, %d ids recovered, %d edited on the site",
            created,
            len(recovered),
            len(edited),
        )
        return SyncOutcome.succeeded(has_local_changes=created + len(recovered) + len(edited) > 0)
