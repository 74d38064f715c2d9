"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  It is loaded
once and cached.  Call ``reload_sync_config()`` to re-read it from disk.

Usage::

    from src.nightscout.config_loader import get_sync_config

    config = get_sync_config()
    config.readings.max_batch_size     # 300
    config.readings.min_spacing        # timedelta(minutes=4.75)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("nightscout.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ReadingsConfig:
    max_upload_days: int = 7
    max_batch_size: int = 300
    min_spacing_minutes: float = 4.75

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_upload_days)

    @property
    def min_spacing(self) -> timedelta:
        return timedelta(minutes=self.min_spacing_minutes)


@dataclass
class CalibrationsConfig:
    max_upload_days: int = 7

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_upload_days)


@dataclass
class TreatmentsConfig:
    page_size: int = 50
    match_time_tolerance_seconds: float = 1.0
    match_value_tolerance: float = 0.001

    @property
    def match_time_tolerance(self) -> timedelta:
        return timedelta(seconds=self.match_time_tolerance_seconds)


@dataclass
class CoordinatorConfig:
    stale_run_seconds: float = 60.0
    settings_debounce_ms: int = 200


@dataclass
class GatewayConfig:
    timeout_seconds: float = 30.0
    duplicate_error_code: int = 66


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:      Config schema version string.
        readings:     Glucose reading upload limits.
        calibrations: Calibration upload limits.
        treatments:   Treatment page size and matching tolerances.
        coordinator:  Stale-run threshold and settings debounce.
        gateway:      HTTP timeout and duplicate-submission code.
    """

    version: str = "1.0"
    readings: ReadingsConfig = field(default_factory=ReadingsConfig)
    calibrations: CalibrationsConfig = field(default_factory=CalibrationsConfig)
    treatments: TreatmentsConfig = field(default_factory=TreatmentsConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing keys take the dataclass defaults.  Every invalid value is
    collected so a single error lists all problems.
    """
    errors: list[str] = []

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    def _number(section: dict, name: str, key: str, default: Any, cast: type, minimum: float) -> Any:
        value = section.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number} must be >= {minimum}")
        return number

    r = _section("readings")
    readings = ReadingsConfig(
        max_upload_days=_number(r, "readings", "max_upload_days", 7, int, 1),
        max_batch_size=_number(r, "readings", "max_batch_size", 300, int, 1),
        min_spacing_minutes=_number(r, "readings", "min_spacing_minutes", 4.75, float, 0),
    )

    c = _section("calibrations")
    calibrations = CalibrationsConfig(
        max_upload_days=_number(c, "calibrations", "max_upload_days", 7, int, 1),
    )

    t = _section("treatments")
    treatments = TreatmentsConfig(
        page_size=_number(t, "treatments", "page_size", 50, int, 1),
        match_time_tolerance_seconds=_number(
            t, "treatments", "match_time_tolerance_seconds", 1.0, float, 0
        ),
        match_value_tolerance=_number(t, "treatments", "match_value_tolerance", 0.001, float, 0),
    )

    co = _section("coordinator")
    coordinator = CoordinatorConfig(
        stale_run_seconds=_number(co, "coordinator", "stale_run_seconds", 60.0, float, 1),
        settings_debounce_ms=_number(co, "coordinator", "settings_debounce_ms", 200, int, 0),
    )

    g = _section("gateway")
    gateway = GatewayConfig(
        timeout_seconds=_number(g, "gateway", "timeout_seconds", 30.0, float, 0.1),
        duplicate_error_code=_number(g, "gateway", "duplicate_error_code", 66, int, 0),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=str(raw.get("version", "1.0")),
        readings=readings,
        calibrations=calibrations,
        treatments=treatments,
        coordinator=coordinator,
        gateway=gateway,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s -> %s", old_version, new_config.version)
    return new_config
