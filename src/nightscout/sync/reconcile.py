"""Matching and merge rules between local treatments and server records.

Two kinds of match:
  - by id: the local treatment already carries the server ``_id``.
  - by content: same kind, value and time within tolerances.  Used to
    recover the server id of a treatment whose upload response was lost or
    could not be matched.

All functions mutate the given treatments in place and return the ones that
changed; persisting them is the caller's job.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from src.nightscout.base import Treatment, TreatmentRecord

logger = logging.getLogger("nightscout.sync.reconcile")

DEFAULT_TIME_TOLERANCE = timedelta(seconds=1)
DEFAULT_VALUE_TOLERANCE = 0.001


def same_millisecond(a: datetime, b: datetime) -> bool:
    """Compare at the millisecond precision timestamps have on the wire."""
    return a.replace(microsecond=a.microsecond // 1000 * 1000) == b.replace(
        microsecond=b.microsecond // 1000 * 1000
    )


def same_content(a: Treatment, b: Treatment) -> bool:
    return (
        a.kind == b.kind
        and a.value == b.value
        and a.timestamp == b.timestamp
        and a.notes == b.notes
    )


def matches_by_id(record: TreatmentRecord, treatment: Treatment) -> bool:
    return bool(record.remote_id) and record.remote_id == treatment.remote_id


def matches_by_content(
    record: TreatmentRecord,
    treatment: Treatment,
    time_tolerance: timedelta = DEFAULT_TIME_TOLERANCE,
    value_tolerance: float = DEFAULT_VALUE_TOLERANCE,
) -> bool:
    return (
        record.kind == treatment.kind
        and abs(record.value - treatment.value) <= value_tolerance
        and abs(record.timestamp - treatment.timestamp) <= time_tolerance
    )


def assign_remote_ids(
    treatments: Iterable[Treatment],
    records: Sequence[TreatmentRecord],
    time_tolerance: timedelta = DEFAULT_TIME_TOLERANCE,
    value_tolerance: float = DEFAULT_VALUE_TOLERANCE,
    claimed: set[str] | None = None,
) -> list[Treatment]:
    """Give id-less, unconfirmed treatments the id of their content match.

    Each record is claimed by at most one treatment.  Ids already present in
    ``claimed`` are skipped; newly claimed ids are added to it.

    Returns:
        The treatments that received an id.
    """
    claimed = claimed if claimed is not None else set()
    assigned: list[Treatment] = []
    for treatment in treatments:
        if treatment.remote_id or treatment.uploaded:
            continue
        for record in records:
            if record.remote_id in claimed:
                continue
            if matches_by_content(record, treatment, time_tolerance, value_tolerance):
                treatment.remote_id = record.remote_id
                treatment.uploaded = True
                claimed.add(record.remote_id)
                assigned.append(treatment)
                logger.debug("Matched treatment %s to %s", treatment.local_id, record.remote_id)
                break
    return assigned


def apply_server_edits(
    treatments: Iterable[Treatment],
    records: Sequence[TreatmentRecord],
) -> list[Treatment]:
    """Overwrite confirmed treatments with their server version when it differs.

    Treatments with unsent local edits (``uploaded`` false) are left alone,
    so a newer local edit is never clobbered.

    Returns:
        The treatments that changed.
    """
    by_id = {record.remote_id: record for record in records}
    edited: list[Treatment] = []
    for treatment in treatments:
        if not (treatment.uploaded and treatment.remote_id):
            continue
        record = by_id.get(treatment.remote_id)
        if record is None:
            continue
        if (
            treatment.kind == record.kind
            and treatment.value == record.value
            and same_millisecond(treatment.timestamp, record.timestamp)
            and treatment.notes == record.notes
        ):
            continue
        treatment.kind = record.kind
        treatment.value = record.value
        treatment.timestamp = record.timestamp
        treatment.notes = record.notes
        edited.append(treatment)
        logger.debug("Applied server edit to treatment %s", treatment.local_id)
    return edited
