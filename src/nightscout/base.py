"""Canonical data models and the storage interface for the Nightscout sync engine.

The engine never owns storage.  Entities are read through ``DataAccess``,
borrowed for the duration of a sync step, and written back inside a
``DataAccess.write()`` session.  The wire representations produced here are
the exact JSON documents posted to the Nightscout REST API.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncContextManager

logger = logging.getLogger("nightscout")

#: Value of ``enteredBy`` / ``device`` on every uploaded document.
ENTERED_BY = "nightscout-sync"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as Nightscout expects: UTC, millisecond precision, ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or epoch milliseconds) to an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if the value is
    missing or unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _safe_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Treatments
# ---------------------------------------------------------------------------


class TreatmentType(str, Enum):
    """Treatment kinds.  The value is the Nightscout ``eventType``."""

    insulin = "Bolus"
    carbs = "Carbs"
    bg_check = "BG Check"
    note = "Note"
    sensor_start = "Sensor Start"

    @property
    def value_field(self) -> str | None:
        """Name of the Nightscout field carrying the numeric value."""
        return _VALUE_FIELDS[self]


_VALUE_FIELDS: dict[TreatmentType, str | None] = {
    TreatmentType.insulin: "insulin",
    TreatmentType.carbs: "carbs",
    TreatmentType.bg_check: "glucose",
    TreatmentType.note: None,
    TreatmentType.sensor_start: None,
}

# Nightscout event types accepted on download, mapped to the local kind
_EVENT_TYPE_ALIASES: dict[str, TreatmentType] = {
    "Bolus": TreatmentType.insulin,
    "Correction Bolus": TreatmentType.insulin,
    "Meal Bolus": TreatmentType.insulin,
    "Carbs": TreatmentType.carbs,
    "Carb Correction": TreatmentType.carbs,
    "BG Check": TreatmentType.bg_check,
    "Note": TreatmentType.note,
    "Announcement": TreatmentType.note,
    "Sensor Start": TreatmentType.sensor_start,
}


@dataclass
class Treatment:
    """A clinical event (insulin, carbs, BG check, note) held in local storage.

    Attributes:
        local_id:  Stable engine-assigned identifier.
        remote_id: Server-assigned ``_id``; empty until the first upload is confirmed.
        kind:      Treatment type.
        value:     Numeric value in the kind's unit (U, g, mg/dL; 0 for notes).
        timestamp: UTC time of the event.
        uploaded:  True when the server holds the current local version.
        notes:     Free text, used by notes.
    """

    kind: TreatmentType
    value: float
    timestamp: datetime
    remote_id: str = ""
    uploaded: bool = False
    notes: str = ""
    local_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        if self.uploaded and not self.remote_id:
            raise ValueError(
                f"Treatment {self.local_id} cannot be marked uploaded without a remote id"
            )

    def mark_edited(self) -> None:
        """Flag a local edit so the next sync PUTs the new version."""
        self.uploaded = False

    def to_nightscout(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "eventType": self.kind.value,
            "created_at": to_iso(self.timestamp),
            "enteredBy": ENTERED_BY,
        }
        if self.kind.value_field:
            data[self.kind.value_field] = self.value
        if self.kind is TreatmentType.bg_check:
            data["glucoseType"] = "Finger"
            data["units"] = "mg/dl"
        if self.notes:
            data["notes"] = self.notes
        if self.remote_id:
            data["_id"] = self.remote_id
        return data


@dataclass
class TreatmentRecord:
    """A treatment as stored on the Nightscout server."""

    remote_id: str
    kind: TreatmentType
    value: float
    timestamp: datetime
    notes: str = ""

    @classmethod
    def from_nightscout(cls, data: Any) -> "TreatmentRecord | None":
        """Parse one document from ``/api/v1/treatments``.

        Returns None for documents the engine cannot represent (no ``_id``,
        no timestamp, unsupported event type).
        """
        if not isinstance(data, dict):
            return None
        remote_id = data.get("_id")
        timestamp = parse_iso_datetime(data.get("created_at"))
        if not remote_id or timestamp is None:
            return None

        event_type = data.get("eventType")
        kind = _EVENT_TYPE_ALIASES.get(event_type) if isinstance(event_type, str) else None
        if kind is None:
            if _safe_float(data.get("insulin")):
                kind = TreatmentType.insulin
            elif _safe_float(data.get("carbs")):
                kind = TreatmentType.carbs
            else:
                logger.debug("Skipping treatment with eventType %r", data.get("eventType"))
                return None

        value = 0.0
        if kind.value_field:
            value = _safe_float(data.get(kind.value_field)) or 0.0

        return cls(
            remote_id=str(remote_id),
            kind=kind,
            value=value,
            timestamp=timestamp,
            notes=data.get("notes") or "",
        )

    def as_treatment(self) -> Treatment:
        """Materialize a new local treatment confirmed by the server."""
        return Treatment(
            kind=self.kind,
            value=self.value,
            timestamp=self.timestamp,
            remote_id=self.remote_id,
            uploaded=True,
            notes=self.notes,
        )


# ---------------------------------------------------------------------------
# Readings, calibrations, sensors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reading:
    """A glucose reading.  Immutable once persisted.

    Attributes:
        reading_id: Local identifier, uploaded as ``_id`` so re-uploads are
                    recognised by the server as duplicates.
        timestamp:  UTC time of the reading.
        value:      Calculated glucose in mg/dL.
        sensor_id:  Sensor that produced the reading.
        direction:  Trend arrow name (``Flat``, ``FortyFiveUp``, ...).
        raw_value:  Raw sensor value, uploaded as filtered/unfiltered.
    """

    reading_id: str
    timestamp: datetime
    value: float
    sensor_id: str | None = None
    direction: str = "NONE"
    raw_value: float = 0.0

    def to_nightscout(self) -> dict[str, Any]:
        return {
            "_id": self.reading_id,
            "device": ENTERED_BY,
            "type": "sgv",
            "date": to_epoch_ms(self.timestamp),
            "dateString": to_iso(self.timestamp),
            "sysTime": to_iso(self.timestamp),
            "sgv": int(round(self.value)),
            "direction": self.direction,
            "filtered": self.raw_value,
            "unfiltered": self.raw_value,
            "noise": 1,
        }


@dataclass(frozen=True)
class Calibration:
    """A finger-stick calibration, uploaded as a ``cal`` and an ``mbg`` entry."""

    calibration_id: str
    timestamp: datetime
    bg_value: float
    raw_value: float = 0.0
    slope: float = 1.0
    intercept: float = 0.0
    sensor_id: str | None = None

    def to_cal_record(self) -> dict[str, Any]:
        return {
            "device": ENTERED_BY,
            "type": "cal",
            "date": to_epoch_ms(self.timestamp),
            "dateString": to_iso(self.timestamp),
            "intercept": self.intercept,
            "scale": 1,
            "slope": self.slope,
        }

    def to_mbg_record(self) -> dict[str, Any]:
        return {
            "device": ENTERED_BY,
            "type": "mbg",
            "date": to_epoch_ms(self.timestamp),
            "dateString": to_iso(self.timestamp),
            "mbg": self.bg_value,
        }


@dataclass
class Sensor:
    """A sensor session.  ``uploaded_to_remote`` guards the one-time start event."""

    sensor_id: str
    start_date: datetime
    uploaded_to_remote: bool = False

    def to_sensor_start(self) -> dict[str, Any]:
        return {
            "_id": self.sensor_id,
            "eventType": TreatmentType.sensor_start.value,
            "created_at": to_iso(self.start_date),
            "enteredBy": ENTERED_BY,
        }


@dataclass(frozen=True)
class TransmitterBatteryInfo:
    """Transmitter battery metric, e.g. ``("battery", 80)`` or ``("batteryVoltage", 310)``."""

    key: str
    value: float | int


@dataclass(frozen=True)
class DeviceStatus:
    """Battery levels reported by the transmitter and the uploading device."""

    transmitter_battery: TransmitterBatteryInfo | None = None
    uploader_battery_level: float | None = None  # 0.0 - 1.0


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class SyncRun:
    """One logical sync run.  At most one run owns the coordinator at a time.

    Attributes:
        started_at:      When the run was started.
        rerun_requested: Set by triggers that arrive while the run is active.
        state:           Snapshot of the watermarks taken at start.
        connection_changes: Transmitter connection changes not yet handed to
                         a readings upload.  Coalesced requests add theirs.
    """

    started_at: datetime
    rerun_requested: bool = False
    state: dict[str, Any] = field(default_factory=dict)
    connection_changes: list[datetime] = field(default_factory=list)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one network operation.

    ``has_local_changes`` tells the coordinator whether entities were created
    or changed locally from server data.
    """

    success: bool
    has_local_changes: bool = False

    @classmethod
    def succeeded(cls, has_local_changes: bool = False) -> "SyncOutcome":
        return cls(success=True, has_local_changes=has_local_changes)

    @classmethod
    def failed(cls) -> "SyncOutcome":
        return cls(success=False)

    def __str__(self) -> str:
        if not self.success:
            return "failed"
        return "success with local changes" if self.has_local_changes else "success"


# ---------------------------------------------------------------------------
# Storage interface
# ---------------------------------------------------------------------------


class WriteSession(ABC):
    """Scoped write access.  Changes are committed when the session closes."""

    @abstractmethod
    async def add_treatment(self, treatment: Treatment) -> None:
        """Insert a new treatment."""

    @abstractmethod
    async def save_treatment(self, treatment: Treatment) -> None:
        """Persist the current field values of an existing treatment."""

    @abstractmethod
    async def save_sensor(self, sensor: Sensor) -> None:
        """Persist the current field values of a sensor."""

    @abstractmethod
    async def delete_treatment(self, treatment: Treatment) -> None:
        """Soft-delete a treatment.  Its server id stays known to the store."""


class DataAccess(ABC):
    """Read/write interface to the local store consumed by the sync engine.

    Implementations guarantee that ``write()`` sessions are serialized and
    transactional: all changes of a session are committed together on normal
    exit and rolled back if the block raises.
    """

    @abstractmethod
    async def readings_after(self, after: datetime) -> list[Reading]:
        """Return readings strictly after ``after``, newest first."""

    @abstractmethod
    async def calibrations_after(self, after: datetime) -> list[Calibration]:
        """Return calibrations strictly after ``after``, newest first."""

    @abstractmethod
    async def active_sensor(self) -> Sensor | None:
        """Return the currently active sensor, if any."""

    @abstractmethod
    async def device_status(self) -> DeviceStatus:
        """Return the latest known battery levels."""

    @abstractmethod
    async def latest_treatments(self, limit: int) -> list[Treatment]:
        """Return the ``limit`` most recent non-deleted treatments, newest first."""

    @abstractmethod
    async def treatment_by_remote_id(self, remote_id: str) -> Treatment | None:
        """Return the treatment with this server id, including deleted ones."""

    @abstractmethod
    async def treatment_by_local_id(self, local_id: str) -> Treatment | None:
        """Return a non-deleted treatment by its local id."""

    @abstractmethod
    def write(self) -> AsyncContextManager[WriteSession]:
        """Open a serialized, transactional write session."""
