"""Sync control and Nightscout site settings endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from src.dependencies import Coordinator, Store
from src.models.sync import (
    CredentialCheckResponse,
    NightscoutSettingsResponse,
    NightscoutSettingsUpdate,
    NotificationResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)

router = APIRouter(prefix="/sync", tags=["sync"])
settings_router = APIRouter(prefix="/settings", tags=["settings"])
logger = logging.getLogger("nightscout.api.sync")


# ---------- Sync control ----------

@router.post("", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(
    coordinator: Coordinator, store: Store, body: SyncTriggerRequest | None = None
) -> Any:
    if not store.settings().is_configured:
        return {"status": "skipped"}
    changes = body.connection_changes if body else []
    task = coordinator.request_sync(connection_changes=changes)
    return {"status": "started" if task is not None else "coalesced"}


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(coordinator: Coordinator, store: Store) -> Any:
    run = coordinator.active_run
    state = store.state()
    return SyncStatusResponse(
        running=run is not None,
        run_started_at=run.started_at if run else None,
        rerun_requested=run.rerun_requested if run else False,
        run_state=run.state if run else None,
        treatments_stage=coordinator.treatments.stage.value,
        treatments_version=coordinator.treatments_version,
        runs_completed=coordinator.runs_completed,
        last_uploaded_reading_time=state.last_uploaded_reading_time,
        last_uploaded_calibration_time=state.last_uploaded_calibration_time,
        sync_treatments_required=state.sync_treatments_required,
        last_outcomes={name: str(o) for name, o in coordinator.last_outcomes.items()},
    )


@router.post("/credentials", response_model=CredentialCheckResponse)
async def verify_credentials(coordinator: Coordinator) -> Any:
    return await coordinator.verify_credentials(notify=True)


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(coordinator: Coordinator) -> Any:
    return list(reversed(coordinator.notifications))


# ---------- Site settings ----------

@settings_router.get("/nightscout", response_model=NightscoutSettingsResponse)
async def get_nightscout_settings(store: Store) -> Any:
    return NightscoutSettingsResponse.from_settings(store.settings())


@settings_router.patch("/nightscout", response_model=NightscoutSettingsResponse)
async def update_nightscout_settings(store: Store, body: NightscoutSettingsUpdate) -> Any:
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        settings = store.update(**updates)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422, detail=exc.errors(include_url=False, include_context=False)
        ) from exc
    return NightscoutSettingsResponse.from_settings(settings)
