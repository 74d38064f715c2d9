"""User-editable Nightscout site settings and persisted sync state.

``NightscoutSettings`` holds what the user configures (site URL, secret,
token, master role, upload schedule).  ``SyncState`` holds what the engine
records between runs (upload watermarks, treatments-sync-required flag).
Both are served to the engine through the ``ConfigProvider`` interface;
``SettingsStore`` is the file-backed implementation used by the app.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time
from pathlib import Path
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.nightscout.base import parse_iso_datetime, utc_now
from src.nightscout.events import ConfigChange, ConfigEvents, SettingKey

if TYPE_CHECKING:
    from src.config import Settings

logger = logging.getLogger("nightscout.settings")


# ---------------------------------------------------------------------------
# Site settings
# ---------------------------------------------------------------------------


class ScheduleWindow(BaseModel):
    """A daily time window in which uploads are allowed.

    A window whose end is before its start wraps past midnight
    (``22:00-06:00``).  A window with equal start and end covers the whole day.
    """

    model_config = ConfigDict(frozen=True)

    start: time
    end: time

    def contains(self, moment: time) -> bool:
        if self.start == self.end:
            return True
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end


class NightscoutSettings(BaseModel):
    """Nightscout site configuration as edited by the user."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    enabled: bool = False
    is_master: bool = True
    url: str | None = None
    port: int = Field(default=0, ge=0, le=65535)
    api_secret: str | None = None
    token: str | None = None
    upload_sensor_start: bool = True
    use_schedule: bool = False
    schedule: list[ScheduleWindow] = Field(default_factory=list)
    schedule_timezone: str = "UTC"

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: str | None) -> str | None:
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("api_secret", "token")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("schedule_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @property
    def is_configured(self) -> bool:
        """True when sync may run at all: enabled, URL, and secret or token."""
        return bool(self.enabled and self.url and (self.api_secret or self.token))

    def schedule_allows(self, now: datetime) -> bool:
        if not self.use_schedule:
            return True
        local = now.astimezone(ZoneInfo(self.schedule_timezone)).time()
        return any(window.contains(local) for window in self.schedule)

    def upload_allowed(self, now: datetime) -> bool:
        """True when the one-way uploads (readings, calibrations, status) may run."""
        return self.is_configured and self.is_master and self.schedule_allows(now)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "NightscoutSettings":
        return cls(
            enabled=settings.nightscout_enabled,
            is_master=settings.nightscout_is_master,
            url=settings.nightscout_url,
            port=settings.nightscout_port,
            api_secret=settings.nightscout_api_secret,
            token=settings.nightscout_token,
            upload_sensor_start=settings.nightscout_upload_sensor_start,
            use_schedule=settings.nightscout_use_schedule,
        )


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


@dataclass
class SyncState:
    """Watermarks and flags persisted between runs.

    Attributes:
        last_uploaded_reading_time:     Timestamp of the newest uploaded reading.
        last_uploaded_calibration_time: Timestamp of the newest uploaded calibration.
        sync_treatments_required:       Set when local treatments changed outside a sync.
    """

    last_uploaded_reading_time: datetime | None = None
    last_uploaded_calibration_time: datetime | None = None
    sync_treatments_required: bool = False

    def to_json(self) -> dict:
        return {
            "last_uploaded_reading_time": (
                self.last_uploaded_reading_time.isoformat()
                if self.last_uploaded_reading_time
                else None
            ),
            "last_uploaded_calibration_time": (
                self.last_uploaded_calibration_time.isoformat()
                if self.last_uploaded_calibration_time
                else None
            ),
            "sync_treatments_required": self.sync_treatments_required,
        }

    @classmethod
    def from_json(cls, data: dict) -> "SyncState":
        return cls(
            last_uploaded_reading_time=parse_iso_datetime(data.get("last_uploaded_reading_time")),
            last_uploaded_calibration_time=parse_iso_datetime(
                data.get("last_uploaded_calibration_time")
            ),
            sync_treatments_required=bool(data.get("sync_treatments_required", False)),
        )


# ---------------------------------------------------------------------------
# Provider interface and file-backed store
# ---------------------------------------------------------------------------


class ConfigProvider(ABC):
    """Source of site settings and sync state for the engine."""

    @abstractmethod
    def settings(self) -> NightscoutSettings:
        """Return the current site settings."""

    @abstractmethod
    def state(self) -> SyncState:
        """Return the live, mutable sync state."""

    @abstractmethod
    def save_state(self) -> None:
        """Persist the sync state after it has been mutated."""

    def clear_treatments_sync_required(self) -> None:
        self.state().sync_treatments_required = False
        self.save_state()

    @property
    def events(self) -> ConfigEvents | None:
        """Channel on which settings changes are published, if any."""
        return None


_SETTING_KEYS: dict[str, SettingKey] = {
    "enabled": SettingKey.enabled,
    "is_master": SettingKey.is_master,
    "url": SettingKey.url,
    "port": SettingKey.port,
    "api_secret": SettingKey.api_secret,
    "token": SettingKey.token,
    "use_schedule": SettingKey.use_schedule,
    "schedule": SettingKey.schedule,
    "schedule_timezone": SettingKey.schedule,
    "upload_sensor_start": SettingKey.upload_sensor_start,
}


class SettingsStore(ConfigProvider):
    """Settings and sync state kept in memory, optionally persisted as JSON.

    Every ``update()`` publishes one ``ConfigChange`` per changed key on
    ``events``.
    """

    def __init__(
        self,
        settings: NightscoutSettings | None = None,
        path: Path | None = None,
        events: ConfigEvents | None = None,
    ) -> None:
        self._settings = settings or NightscoutSettings()
        self._state = SyncState()
        self._path = path
        self._events = events or ConfigEvents()

    @classmethod
    def load(
        cls,
        path: Path | None,
        defaults: NightscoutSettings | None = None,
        events: ConfigEvents | None = None,
    ) -> "SettingsStore":
        """Create a store, merging values saved at ``path`` over ``defaults``.

        A missing or unreadable file leaves the defaults in place.
        """
        store = cls(settings=defaults, path=path, events=events)
        if path is None or not path.exists():
            return store

        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not load sync state from %s: %s", path, exc)
            return store

        if "settings" in raw:
            merged = {**store._settings.model_dump(), **raw["settings"]}
            store._settings = NightscoutSettings.model_validate(merged)
        if "state" in raw:
            store._state = SyncState.from_json(raw["state"])
        logger.info("Loaded sync state from %s", path)
        return store

    @property
    def events(self) -> ConfigEvents:
        return self._events

    def settings(self) -> NightscoutSettings:
        return self._settings

    def state(self) -> SyncState:
        return self._state

    def save_state(self) -> None:
        self._write()

    def update(self, **changes: Any) -> NightscoutSettings:
        """Apply and persist settings changes, then publish them.

        Raises:
            pydantic.ValidationError: If any value is invalid; nothing is applied.
        """
        unknown = set(changes) - set(NightscoutSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        updated = NightscoutSettings.model_validate({**self._settings.model_dump(), **changes})
        changed = [
            name for name in changes if getattr(updated, name) != getattr(self._settings, name)
        ]
        self._settings = updated
        if not changed:
            return updated

        self._write()
        logger.info("Nightscout settings changed: %s", ", ".join(changed))
        published: set[SettingKey] = set()
        for name in changed:
            key = _SETTING_KEYS[name]
            if key not in published:
                published.add(key)
                self._events.publish(ConfigChange(key, getattr(updated, name)))
        return updated

    def request_treatments_sync(self) -> None:
        """Flag that local treatments changed and a treatments sync is needed."""
        self._state.sync_treatments_required = True
        self._write()
        self._events.publish(ConfigChange(SettingKey.treatments_sync_required, True))

    def _write(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "settings": self._settings.model_dump(mode="json"),
            "state": self._state.to_json(),
            "saved_at": utc_now().isoformat(),
        }
        with self._path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
