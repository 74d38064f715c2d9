"""Schemas for the sync control, settings and treatments endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from src.models.base import ApiBase
from src.nightscout.base import TreatmentType
from src.nightscout.settings import NightscoutSettings, ScheduleWindow


# ---------- Sync control ----------


class SyncTriggerRequest(ApiBase):
    connection_changes: list[datetime] = Field(default_factory=list)


class SyncTriggerResponse(ApiBase):
    status: Literal["started", "coalesced", "skipped"]


class SyncStatusResponse(ApiBase):
    running: bool
    run_started_at: datetime | None = None
    rerun_requested: bool = False
    run_state: dict[str, Any] | None = None
    treatments_stage: str
    treatments_version: int
    runs_completed: int
    last_uploaded_reading_time: datetime | None = None
    last_uploaded_calibration_time: datetime | None = None
    sync_treatments_required: bool = False
    last_outcomes: dict[str, str] = Field(default_factory=dict)


class CredentialCheckResponse(ApiBase):
    success: bool
    title: str
    message: str


class NotificationResponse(ApiBase):
    title: str
    message: str
    created_at: datetime


# ---------- Site settings ----------


class NightscoutSettingsResponse(ApiBase):
    """Site settings as shown to the user.  Secret and token are never returned."""

    enabled: bool
    is_master: bool
    url: str | None
    port: int
    has_api_secret: bool
    has_token: bool
    upload_sensor_start: bool
    use_schedule: bool
    schedule: list[ScheduleWindow]
    schedule_timezone: str

    @classmethod
    def from_settings(cls, settings: NightscoutSettings) -> "NightscoutSettingsResponse":
        return cls(
            enabled=settings.enabled,
            is_master=settings.is_master,
            url=settings.url,
            port=settings.port,
            has_api_secret=bool(settings.api_secret),
            has_token=bool(settings.token),
            upload_sensor_start=settings.upload_sensor_start,
            use_schedule=settings.use_schedule,
            schedule=settings.schedule,
            schedule_timezone=settings.schedule_timezone,
        )


class NightscoutSettingsUpdate(ApiBase):
    enabled: bool | None = None
    is_master: bool | None = None
    url: str | None = None
    port: int | None = None
    api_secret: str | None = None
    token: str | None = None
    upload_sensor_start: bool | None = None
    use_schedule: bool | None = None
    schedule: list[ScheduleWindow] | None = None
    schedule_timezone: str | None = None


# ---------- Treatments ----------


class TreatmentCreate(ApiBase):
    kind: TreatmentType
    value: float = Field(default=0.0, ge=0)
    timestamp: datetime | None = None
    notes: str = ""


class TreatmentUpdate(ApiBase):
    kind: TreatmentType | None = None
    value: float | None = Field(default=None, ge=0)
    timestamp: datetime | None = None
    notes: str | None = None


class TreatmentResponse(ApiBase):
    local_id: str
    remote_id: str
    kind: TreatmentType
    value: float
    timestamp: datetime
    uploaded: bool
    notes: str
