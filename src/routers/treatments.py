"""Treatment endpoints used by the UI.

Every change flags a treatments sync on the settings store, which the sync
coordinator picks up.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Response

from src.dependencies import Data, Store
from src.models.sync import TreatmentCreate, TreatmentResponse, TreatmentUpdate
from src.nightscout.base import Treatment, utc_now

router = APIRouter(prefix="/treatments", tags=["treatments"])


@router.get("", response_model=list[TreatmentResponse])
async def list_treatments(data: Data, limit: int = Query(default=50, ge=1, le=500)) -> Any:
    return await data.latest_treatments(limit)


@router.post("", response_model=TreatmentResponse, status_code=201)
async def create_treatment(data: Data, store: Store, body: TreatmentCreate) -> Any:
    treatment = Treatment(
        kind=body.kind,
        value=body.value,
        timestamp=body.timestamp or utc_now(),
        notes=body.notes,
    )
    async with data.write() as session:
        await session.add_treatment(treatment)
    store.request_treatments_sync()
    return treatment


@router.patch("/{local_id}", response_model=TreatmentResponse)
async def update_treatment(local_id: str, data: Data, store: Store, body: TreatmentUpdate) -> Any:
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    treatment = await data.treatment_by_local_id(local_id)
    if treatment is None:
        raise HTTPException(status_code=404, detail="Treatment not found")

    for key, value in updates.items():
        setattr(treatment, key, value)
    treatment.mark_edited()
    async with data.write() as session:
        await session.save_treatment(treatment)
    store.request_treatments_sync()
    return treatment


@router.delete("/{local_id}", status_code=204)
async def delete_treatment(local_id: str, data: Data, store: Store) -> Response:
    treatment = await data.treatment_by_local_id(local_id)
    if treatment is None:
        raise HTTPException(status_code=404, detail="Treatment not found")
    async with data.write() as session:
        await session.delete_treatment(treatment)
    store.request_treatments_sync()
    return Response(status_code=204)
