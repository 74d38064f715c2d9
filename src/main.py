"""Nightscout Sync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from src.config import get_settings
from src.nightscout.config_loader import get_sync_config
from src.nightscout.events import ConfigEvents
from src.nightscout.gateway import NightscoutGateway
from src.nightscout.settings import NightscoutSettings, SettingsStore
from src.nightscout.sync.coordinator import SyncCoordinator
from src.routers import health, sync, treatments
from src.services.database import PostgresDataAccess, close_pool, ensure_schema, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("nightscout")


def _log_message(title: str, message: str) -> None:
    logger.info("%s: %s", title, message)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    sync_config = get_sync_config()
    logger.info(
        "Starting Nightscout Sync v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    pool = await init_pool(settings)
    await ensure_schema(pool)
    data_access = PostgresDataAccess(pool)

    store = SettingsStore.load(
        Path(settings.sync_state_path) if settings.sync_state_path else None,
        defaults=NightscoutSettings.from_settings(settings),
        events=ConfigEvents(sync_config.coordinator.settings_debounce_ms),
    )
    http_client = httpx.AsyncClient(timeout=sync_config.gateway.timeout_seconds)
    gateway = NightscoutGateway(store, http_client, sync_config)
    coordinator = SyncCoordinator(
        data_access, store, gateway, message_handler=_log_message, sync_config=sync_config
    )

    app.state.data_access = data_access
    app.state.settings_store = store
    app.state.coordinator = coordinator

    coordinator.request_sync()
    yield

    coordinator.close()
    await coordinator.wait_idle()
    await http_client.aclose()
    await close_pool()
    logger.info("Nightscout Sync shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Nightscout Sync API",
        description=(
            "Synchronizes glucose readings, calibrations, sensor events and "
            "treatments between the local store and a Nightscout site."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)
    app.include_router(sync.settings_router, prefix=v1_prefix)
    app.include_router(treatments.router, prefix=v1_prefix)

    return app


app = create_app()
