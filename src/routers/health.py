"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("nightscout.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check and reports whether a
    sync is running.
    """
    db_ok = False
    try:
        db_ok = await request.app.state.data_access.ping()
    except Exception as exc:
        logger.warning("Health check DB ping failed: %s", exc)

    coordinator = getattr(request.app.state, "coordinator", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "sync": "running" if coordinator and coordinator.active_run else "idle",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
