"""Postgres storage for readings, calibrations, sensors and treatments.

Uses ``asyncpg`` directly.  The pool is created once at app startup;
``PostgresDataAccess`` implements the sync engine's ``DataAccess`` on top of
it.  Write sessions are serialized by an in-process lock and each one runs in
a single transaction.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

import asyncpg

from src.config import Settings, get_settings
from src.nightscout.base import (
    Calibration,
    DataAccess,
    DeviceStatus,
    Reading,
    Sensor,
    TransmitterBatteryInfo,
    Treatment,
    TreatmentType,
    WriteSession,
    utc_now,
)

logger = logging.getLogger("nightscout.db")

# Module-level connection pool, created by init_pool() in the app lifespan
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.database_pool_min,
        max_size=s.database_pool_max,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.database_pool_min, s.database_pool_max
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS readings (
    id          TEXT PRIMARY KEY,
    timestamp   TIMESTAMPTZ NOT NULL,
    value       DOUBLE PRECISION NOT NULL,
    sensor_id   TEXT,
    direction   TEXT NOT NULL DEFAULT 'NONE',
    raw_value   DOUBLE PRECISION NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS readings_timestamp_idx ON readings (timestamp DESC);

CREATE TABLE IF NOT EXISTS calibrations (
    id          TEXT PRIMARY KEY,
    timestamp   TIMESTAMPTZ NOT NULL,
    bg_value    DOUBLE PRECISION NOT NULL,
    raw_value   DOUBLE PRECISION NOT NULL DEFAULT 0,
    slope       DOUBLE PRECISION NOT NULL DEFAULT 1,
    intercept   DOUBLE PRECISION NOT NULL DEFAULT 0,
    sensor_id   TEXT
);
CREATE INDEX IF NOT EXISTS calibrations_timestamp_idx ON calibrations (timestamp DESC);

CREATE TABLE IF NOT EXISTS sensors (
    id                  TEXT PRIMARY KEY,
    start_date          TIMESTAMPTZ NOT NULL,
    end_date            TIMESTAMPTZ,
    uploaded_to_remote  BOOLEAN NOT NULL DEFAULT FALSE,
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS device_status (
    id                          INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
    transmitter_battery_key     TEXT,
    transmitter_battery_value   DOUBLE PRECISION,
    uploader_battery_level      DOUBLE PRECISION,
    updated_at                  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS treatments (
    local_id    TEXT PRIMARY KEY,
    remote_id   TEXT NOT NULL DEFAULT '',
    kind        TEXT NOT NULL,
    value       DOUBLE PRECISION NOT NULL DEFAULT 0,
    timestamp   TIMESTAMPTZ NOT NULL,
    uploaded    BOOLEAN NOT NULL DEFAULT FALSE,
    notes       TEXT NOT NULL DEFAULT '',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at  TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS treatments_timestamp_idx ON treatments (timestamp DESC);
CREATE UNIQUE INDEX IF NOT EXISTS treatments_remote_id_idx
    ON treatments (remote_id) WHERE remote_id <> '';
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)
    logger.info("Database schema ensured")


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict, updates the non-key columns and ``updated_at``.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


_TREATMENT_COLUMNS = ["local_id", "remote_id", "kind", "value", "timestamp", "uploaded", "notes"]
_TREATMENT_UPSERT = build_upsert_query("treatments", _TREATMENT_COLUMNS, ["local_id"])
_TREATMENT_SELECT = f"SELECT {', '.join(_TREATMENT_COLUMNS)} FROM treatments"
_SENSOR_UPSERT = build_upsert_query(
    "sensors", ["id", "start_date", "uploaded_to_remote"], ["id"]
)


def _treatment_args(treatment: Treatment) -> tuple:
    return (
        treatment.local_id,
        treatment.remote_id,
        treatment.kind.value,
        treatment.value,
        treatment.timestamp,
        treatment.uploaded,
        treatment.notes,
    )


def _row_to_treatment(row: asyncpg.Record) -> Treatment:
    return Treatment(
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        kind=TreatmentType(row["kind"]),
        value=row["value"],
        timestamp=row["timestamp"],
        uploaded=row["uploaded"],
        notes=row["notes"],
    )


# ---------------------------------------------------------------------------
# DataAccess implementation
# ---------------------------------------------------------------------------


class PostgresWriteSession(WriteSession):
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def add_treatment(self, treatment: Treatment) -> None:
        await self._conn.execute(_TREATMENT_UPSERT, *_treatment_args(treatment))

    async def save_treatment(self, treatment: Treatment) -> None:
        await self._conn.execute(_TREATMENT_UPSERT, *_treatment_args(treatment))

    async def delete_treatment(self, treatment: Treatment) -> None:
        await self._conn.execute(
            "UPDATE treatments SET deleted_at = $2, updated_at = NOW() WHERE local_id = $1",
            treatment.local_id,
            utc_now(),
        )

    async def save_sensor(self, sensor: Sensor) -> None:
        await self._conn.execute(
            _SENSOR_UPSERT, sensor.sensor_id, sensor.start_date, sensor.uploaded_to_remote
        )


class PostgresDataAccess(DataAccess):
    """``DataAccess`` backed by the asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool
        self._write_lock = asyncio.Lock()

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool or get_pool()

    async def readings_after(self, after: datetime) -> list[Reading]:
        rows = await self.pool.fetch(
            "SELECT id, timestamp, value, sensor_id, direction, raw_value "
            "FROM readings WHERE timestamp > $1 ORDER BY timestamp DESC",
            after,
        )
        return [
            Reading(
                reading_id=r["id"],
                timestamp=r["timestamp"],
                value=r["value"],
                sensor_id=r["sensor_id"],
                direction=r["direction"],
                raw_value=r["raw_value"],
            )
            for r in rows
        ]

    async def calibrations_after(self, after: datetime) -> list[Calibration]:
        rows = await self.pool.fetch(
            "SELECT id, timestamp, bg_value, raw_value, slope, intercept, sensor_id "
            "FROM calibrations WHERE timestamp > $1 ORDER BY timestamp DESC",
            after,
        )
        return [
            Calibration(
                calibration_id=r["id"],
                timestamp=r["timestamp"],
                bg_value=r["bg_value"],
                raw_value=r["raw_value"],
                slope=r["slope"],
                intercept=r["intercept"],
                sensor_id=r["sensor_id"],
            )
            for r in rows
        ]

    async def active_sensor(self) -> Sensor | None:
        row = await self.pool.fetchrow(
            "SELECT id, start_date, uploaded_to_remote FROM sensors "
            "WHERE end_date IS NULL ORDER BY start_date DESC LIMIT 1"
        )
        if row is None:
            return None
        return Sensor(
            sensor_id=row["id"],
            start_date=row["start_date"],
            uploaded_to_remote=row["uploaded_to_remote"],
        )

    async def device_status(self) -> DeviceStatus:
        row = await self.pool.fetchrow(
            "SELECT transmitter_battery_key, transmitter_battery_value, uploader_battery_level "
            "FROM device_status WHERE id = 1"
        )
        if row is None:
            return DeviceStatus()
        battery = None
        if row["transmitter_battery_key"] and row["transmitter_battery_value"] is not None:
            value = row["transmitter_battery_value"]
            battery = TransmitterBatteryInfo(
                key=row["transmitter_battery_key"],
                value=int(value) if float(value).is_integer() else value,
            )
        return DeviceStatus(
            transmitter_battery=battery,
            uploader_battery_level=row["uploader_battery_level"],
        )

    async def latest_treatments(self, limit: int) -> list[Treatment]:
        rows = await self.pool.fetch(
            f"{_TREATMENT_SELECT} WHERE deleted_at IS NULL ORDER BY timestamp DESC LIMIT $1",
            limit,
        )
        return [_row_to_treatment(r) for r in rows]

    async def treatment_by_remote_id(self, remote_id: str) -> Treatment | None:
        row = await self.pool.fetchrow(f"{_TREATMENT_SELECT} WHERE remote_id = $1", remote_id)
        return _row_to_treatment(row) if row else None

    async def treatment_by_local_id(self, local_id: str) -> Treatment | None:
        row = await self.pool.fetchrow(
            f"{_TREATMENT_SELECT} WHERE local_id = $1 AND deleted_at IS NULL", local_id
        )
        return _row_to_treatment(row) if row else None

    @asynccontextmanager
    async def write(self) -> AsyncGenerator[PostgresWriteSession, None]:
        async with self._write_lock:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresWriteSession(conn)

    async def ping(self) -> bool:
        return await self.pool.fetchval("SELECT 1") == 1
