"""Shared fixtures: in-memory store, fake Nightscout site, gateway and coordinator."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Callable

import httpx
import pytest

from src.nightscout.base import (
    Calibration,
    DataAccess,
    DeviceStatus,
    Reading,
    Sensor,
    Treatment,
    WriteSession,
)
from src.nightscout.config_loader import SyncConfig, load_sync_config
from src.nightscout.events import ConfigEvents
from src.nightscout.gateway import NightscoutGateway, hash_api_secret
from src.nightscout.settings import NightscoutSettings, SettingsStore
from src.nightscout.sync.coordinator import SyncCoordinator

FIXTURES_DIR = Path(__file__).parent / "fixtures"

NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)
SITE_URL = "https://cgm.example.com"
API_SECRET = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryWriteSession(WriteSession):
    """Stages changes; ``InMemoryDataAccess.write`` applies them on clean exit."""

    def __init__(self) -> None:
        self.treatments: dict[str, Treatment] = {}
        self.deleted: set[str] = set()
        self.sensor: Sensor | None = None

    async def add_treatment(self, treatment: Treatment) -> None:
        self.treatments[treatment.local_id] = replace(treatment)

    async def save_treatment(self, treatment: Treatment) -> None:
        self.treatments[treatment.local_id] = replace(treatment)

    async def delete_treatment(self, treatment: Treatment) -> None:
        self.deleted.add(treatment.local_id)

    async def save_sensor(self, sensor: Sensor) -> None:
        self.sensor = replace(sensor)


class InMemoryDataAccess(DataAccess):
    """``DataAccess`` over plain lists.  Reads return copies, like a database."""

    def __init__(self) -> None:
        self.readings: list[Reading] = []
        self.calibrations: list[Calibration] = []
        self.sensor: Sensor | None = None
        self.status = DeviceStatus()
        self.treatments: dict[str, Treatment] = {}
        self.deleted: set[str] = set()
        self.commits = 0
        self._lock = asyncio.Lock()

    async def readings_after(self, after: datetime) -> list[Reading]:
        return sorted(
            (r for r in self.readings if r.timestamp > after),
            key=lambda r: r.timestamp,
            reverse=True,
        )

    async def calibrations_after(self, after: datetime) -> list[Calibration]:
        return sorted(
            (c for c in self.calibrations if c.timestamp > after),
            key=lambda c: c.timestamp,
            reverse=True,
        )

    async def active_sensor(self) -> Sensor | None:
        return replace(self.sensor) if self.sensor else None

    async def device_status(self) -> DeviceStatus:
        return self.status

    async def latest_treatments(self, limit: int) -> list[Treatment]:
        live = [t for t in self.treatments.values() if t.local_id not in self.deleted]
        live.sort(key=lambda t: t.timestamp, reverse=True)
        return [replace(t) for t in live[:limit]]

    async def treatment_by_remote_id(self, remote_id: str) -> Treatment | None:
        for treatment in self.treatments.values():
            if remote_id and treatment.remote_id == remote_id:
                return replace(treatment)
        return None

    async def treatment_by_local_id(self, local_id: str) -> Treatment | None:
        treatment = self.treatments.get(local_id)
        if treatment is None or local_id in self.deleted:
            return None
        return replace(treatment)

    @asynccontextmanager
    async def write(self) -> AsyncGenerator[InMemoryWriteSession, None]:
        async with self._lock:
            session = InMemoryWriteSession()
            yield session
            self.treatments.update(session.treatments)
            self.deleted |= session.deleted
            if session.sensor is not None:
                self.sensor = session.sensor
            self.commits += 1

    async def ping(self) -> bool:
        return True

    # Test helpers

    def add(self, treatment: Treatment) -> Treatment:
        self.treatments[treatment.local_id] = treatment
        return treatment

    def get(self, local_id: str) -> Treatment:
        return self.treatments[local_id]


# ---------------------------------------------------------------------------
# Fake Nightscout site
# ---------------------------------------------------------------------------


class FakeNightscout:
    """``httpx.MockTransport`` handler emulating the Nightscout REST API.

    Stores uploaded treatments and assigns ``_id`` values like the real
    site.  ``respond()`` queues canned responses for a method and path,
    used before the default behaviour.
    """

    def __init__(self, api_secret: str = API_SECRET) -> None:
        self.requests: list[httpx.Request] = []
        self.treatments: list[dict] = []
        self._secret_hash = hash_api_secret(api_secret)
        self._canned: dict[tuple[str, str], list] = {}
        self._next_id = 1

    def respond(self, method: str, path: str, *responses: httpx.Response | Callable) -> None:
        self._canned.setdefault((method, path), []).extend(responses)

    def sent(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def bodies(self, method: str, path: str) -> list:
        return [json.loads(r.content) for r in self.sent(method, path)]

    def new_id(self) -> str:
        remote_id = f"ns{self._next_id:04d}"
        self._next_id += 1
        return remote_id

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        canned = self._canned.get((request.method, request.url.path))
        if canned:
            response = canned.pop(0)
            return response(request) if callable(response) else response
        return self._default(request)

    def _default(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/experiments/test":
            if request.headers.get("api-secret") == self._secret_hash:
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(401, text="Unauthorized")

        if path == "/api/v1/treatments":
            if request.method == "GET":
                count = int(request.url.params.get("count", 10))
                newest = sorted(self.treatments, key=lambda t: t["created_at"], reverse=True)
                return httpx.Response(200, json=newest[:count])
            body = json.loads(request.content)
            if request.method == "PUT":
                for i, stored in enumerate(self.treatments):
                    if stored["_id"] == body.get("_id"):
                        self.treatments[i] = body
                return httpx.Response(200, json=body)
            docs = body if isinstance(body, list) else [body]
            stored_docs = []
            for doc in docs:
                stored = {**doc, "_id": doc.get("_id") or self.new_id()}
                self.treatments.append(stored)
                stored_docs.append(stored)
            return httpx.Response(200, json=stored_docs)

        if request.method == "POST":
            return httpx.Response(200, json=json.loads(request.content))
        return httpx.Response(404, text="Not found")

    def add_treatment(self, **doc: object) -> dict:
        stored = {"_id": self.new_id(), **doc}
        self.treatments.append(stored)
        return stored


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def data() -> InMemoryDataAccess:
    return InMemoryDataAccess()


@pytest.fixture
def site() -> FakeNightscout:
    return FakeNightscout()


@pytest.fixture
def configured_settings() -> NightscoutSettings:
    return NightscoutSettings(enabled=True, is_master=True, url=SITE_URL, api_secret=API_SECRET)


@pytest.fixture
def store(configured_settings: NightscoutSettings) -> SettingsStore:
    """Configured store with an immediate (no debounce) event channel."""
    return SettingsStore(settings=configured_settings, events=ConfigEvents(debounce_ms=0))


@pytest.fixture
def http_client(site: FakeNightscout) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(site))


@pytest.fixture
def gateway(
    store: SettingsStore, http_client: httpx.AsyncClient, sync_config: SyncConfig
) -> NightscoutGateway:
    return NightscoutGateway(store, http_client, sync_config)


@pytest.fixture
def messages() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def coordinator(
    data: InMemoryDataAccess,
    store: SettingsStore,
    gateway: NightscoutGateway,
    sync_config: SyncConfig,
    clock: FixedClock,
    messages: list[tuple[str, str]],
) -> SyncCoordinator:
    return SyncCoordinator(
        data,
        store,
        gateway,
        message_handler=lambda title, message: messages.append((title, message)),
        sync_config=sync_config,
        clock=clock,
    )


@pytest.fixture
def treatments_download() -> list[dict]:
    return json.loads((FIXTURES_DIR / "treatments_download.json").read_text())


def make_reading(minutes: float, value: float = 120.0, base: datetime | None = None) -> Reading:
    """Reading ``minutes`` after ``base`` (one hour before NOW by default)."""
    start = base or NOW - timedelta(hours=1)
    timestamp = start + timedelta(minutes=minutes)
    return Reading(reading_id=f"r-{timestamp.isoformat()}", timestamp=timestamp, value=value)
