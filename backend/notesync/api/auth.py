"""Session gateway endpoints.

- POST   /auth/register      -- Create account + device, returns token pair (201)
- POST   /auth/login         -- Email/password login for a device, returns token pair
- POST   /auth/refresh       -- Exchange refresh token for a new access token
- POST   /auth/logout        -- Revoke a refresh token (idempotent)
- GET    /auth/me            -- Current user and device (requires auth)
- GET    /auth/devices       -- Devices of the current user (requires auth)
- DELETE /auth/devices/{id}  -- Revoke a device and its refresh tokens (requires auth)

Failures are raised as :mod:`notesync.errors` kinds and rendered as
``{"error": ...}`` by the handler registered in :mod:`notesync.main`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.api import CamelModel
from notesync.database import get_db
from notesync.models import Device, User
from notesync.services import auth_service
from notesync.services.auth_service import CurrentDevice, get_current_device
from notesync.services.user_service import delete_device, get_device, get_user_by_id, list_devices
from notesync.utils.datetime_utils import datetime_to_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class RegisterRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=100)
    device_id: str = Field(min_length=1)
    device_name: str | None = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    device_name: str | None = None


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class UserResponse(CamelModel):
    id: int
    email: str
    created_at: str | None = None


class TokenPairResponse(CamelModel):
    user: UserResponse
    access_token: str
    refresh_token: str


class AccessTokenResponse(CamelModel):
    access_token: str


class MessageResponse(CamelModel):
    message: str


class DeviceResponse(CamelModel):
    id: int
    device_id: str
    device_name: str
    last_sync_at: str | None = None
    created_at: str | None = None
    current: bool = False


class MeResponse(CamelModel):
    user: UserResponse
    device: DeviceResponse


def _user_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, email=user.email, created_at=datetime_to_iso(user.created_at))


def device_response(device: Device, current_pk: int | None = None) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        device_id=device.device_id,
        device_name=device.device_name,
        last_sync_at=datetime_to_iso(device.last_sync_at),
        created_at=datetime_to_iso(device.created_at),
        current=device.id == current_pk,
    )


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


@router.post("/register", response_model=TokenPairResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> TokenPairResponse:
    """Register a new account from a device. Returns a device-bound token pair."""
    result = await auth_service.register(
        db,
        email=request.email,
        password=request.password,
        device_id=request.device_id,
        device_name=request.device_name,
    )
    return TokenPairResponse(
        user=_user_response(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )


@router.post("/login", response_model=TokenPairResponse)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> TokenPairResponse:
    """Authenticate with email/password for a device. Always issues a fresh pair."""
    result = await auth_service.login(
        db,
        email=request.email,
        password=request.password,
        device_id=request.device_id,
        device_name=request.device_name,
    )
    return TokenPairResponse(
        user=_user_response(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )


@router.post("/refresh", response_model=AccessTokenResponse)
async def refresh_token(
    request: RefreshRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> AccessTokenResponse:
    """Exchange a valid, unrevoked refresh token for a new access token."""
    access_token = await auth_service.refresh(db, request.refresh_token)
    return AccessTokenResponse(access_token=access_token)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: RefreshRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> MessageResponse:
    """Revoke a refresh token. Unknown tokens succeed too."""
    await auth_service.logout(db, request.refresh_token)
    return MessageResponse(message="Logged out successfully")


# ---------------------------------------------------------------------------
# Current identity and devices
# ---------------------------------------------------------------------------


@router.get("/me", response_model=MeResponse)
async def me(
    current: CurrentDevice = Depends(get_current_device),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> MeResponse:
    """Return the authenticated user and the device the token is bound to."""
    user = await get_user_by_id(db, current.user_id)
    device = await get_device(db, current.device_pk)
    if not user or not device:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or expired token",
        )

    return MeResponse(
        user=_user_response(user),
        device=device_response(device, current.device_pk),
    )


@router.get("/devices", response_model=list[DeviceResponse])
async def get_devices(
    current: CurrentDevice = Depends(get_current_device),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> list[DeviceResponse]:
    """List every device registered to the current user, most recent first."""
    devices = await list_devices(db, current.user_id)
    return [device_response(d, current.device_pk) for d in devices]


@router.delete("/devices/{device_pk}", response_model=MessageResponse)
async def revoke_device(
    device_pk: int,
    current: CurrentDevice = Depends(get_current_device),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> MessageResponse:
    """Delete a device row. Its refresh tokens go with it and its access
    tokens stop being accepted immediately."""
    removed = await delete_device(db, current.user_id, device_pk)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")

    await db.commit()
    logger.info("Device revoked: user_id=%s, device=%s", current.user_id, device_pk)
    return MessageResponse(message="Device revoked")
