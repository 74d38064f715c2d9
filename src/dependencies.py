"""Shared FastAPI dependencies injected into route handlers.

The sync components are created once in the app lifespan and stored on
``app.state``.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from src.config import Settings, get_settings
from src.nightscout.base import DataAccess
from src.nightscout.settings import SettingsStore
from src.nightscout.sync.coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store


def get_data_access(request: Request) -> DataAccess:
    return request.app.state.data_access


# Annotated shortcuts for route signatures
Coordinator = Annotated[SyncCoordinator, Depends(get_coordinator)]
Store = Annotated[SettingsStore, Depends(get_settings_store)]
Data = Annotated[DataAccess, Depends(get_data_access)]
AppSettings = Annotated[Settings, Depends(get_settings)]
