"""Sync relay endpoints.

Provides:
- ``GET  /sync/changes`` -- Pull changes made by the caller's other devices
- ``POST /sync/push``    -- Push local changes from the calling device
- ``GET  /sync/status``  -- Devices of the current user and recent change count

All endpoints require a device-bound access token via the
``get_current_device`` dependency. Change payloads (``dataJson``) are opaque
to the server.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.api import CamelModel
from notesync.api.auth import DeviceResponse, device_response
from notesync.config import get_settings
from notesync.constants import SyncOperation
from notesync.database import get_db
from notesync.services.auth_service import CurrentDevice, get_current_device
from notesync.services.sync_log_service import (
    ChangeInput,
    count_recent_changes,
    get_changes_since,
    record_changes,
)
from notesync.services.user_service import list_devices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ChangeIn(CamelModel):
    entity_type: str = Field(min_length=1, max_length=50)
    entity_id: str = Field(min_length=1, max_length=255)
    operation: SyncOperation
    data_json: dict[str, Any] | None = None
    timestamp: int = Field(ge=0)


class ChangeOut(CamelModel):
    id: int
    entity_type: str
    entity_id: str
    operation: str
    data_json: dict[str, Any] | None = None
    timestamp: int
    device_id: int | None = None


class PushRequest(CamelModel):
    changes: list[ChangeIn]


class PushResponse(CamelModel):
    applied: int


class ChangesResponse(CamelModel):
    changes: list[ChangeOut]
    has_more: bool
    last_timestamp: int


class SyncStatusResponse(CamelModel):
    devices: list[DeviceResponse]
    pending_changes: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/changes", response_model=ChangesResponse)
async def pull_changes(
    since: int | None = Query(default=None, ge=0),
    limit: int | None = Query(default=None, gt=0, le=10000),
    current: CurrentDevice = Depends(get_current_device),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> ChangesResponse:
    """Return changes from the user's other devices newer than ``since`` (ms)."""
    if limit is None:
        limit = get_settings().SYNC_PULL_LIMIT

    entries = await get_changes_since(db, current.user_id, current.device_pk, since, limit)
    changes = [
        ChangeOut(
            id=e.id,
            entity_type=e.entity_type,
            entity_id=e.entity_id,
            operation=e.operation,
            data_json=e.data,
            timestamp=e.timestamp,
            device_id=e.device_id,
        )
        for e in entries
    ]

    return ChangesResponse(
        changes=changes,
        has_more=len(changes) == limit,
        last_timestamp=changes[-1].timestamp if changes else (since or 0),
    )


@router.post("/push", response_model=PushResponse)
async def push_changes(
    request: PushRequest,
    current: CurrentDevice = Depends(get_current_device),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> PushResponse:
    """Record changes from the calling device for its siblings to pull."""
    applied = await record_changes(
        db,
        current.user_id,
        current.device_pk,
        [
            ChangeInput(
                entity_type=c.entity_type,
                entity_id=c.entity_id,
                operation=str(c.operation),
                timestamp=c.timestamp,
                data=c.data_json,
            )
            for c in request.changes
        ],
    )
    return PushResponse(applied=applied)


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    current: CurrentDevice = Depends(get_current_device),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> SyncStatusResponse:
    devices = await list_devices(db, current.user_id)
    return SyncStatusResponse(
        devices=[device_response(d, current.device_pk) for d in devices],
        pending_changes=await count_recent_changes(db, current.user_id),
    )
