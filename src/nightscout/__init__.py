"""Nightscout sync engine.

Keeps a local store of glucose readings, calibrations, sensor sessions and
treatments in sync with a Nightscout site over its REST API.

Subpackages:
    sync/  — Uploaders, treatments pipeline and the sync coordinator

Core modules:
    base          — Data models and the DataAccess storage interface
    gateway       — HTTP gateway: URLs, authentication, response classification
    settings      — Site settings, sync state and the ConfigProvider interface
    events        — Debounced settings-change channel
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from src.nightscout.base import (
    Calibration,
    DataAccess,
    DeviceStatus,
    Reading,
    Sensor,
    SyncOutcome,
    TransmitterBatteryInfo,
    Treatment,
    TreatmentType,
    WriteSession,
)
from src.nightscout.config_loader import SyncConfig, get_sync_config

__all__ = [
    "Calibration",
    "DataAccess",
    "DeviceStatus",
    "Reading",
    "Sensor",
    "SyncOutcome",
    "TransmitterBatteryInfo",
    "Treatment",
    "TreatmentType",
    "WriteSession",
    "SyncConfig",
    "get_sync_config",
]
