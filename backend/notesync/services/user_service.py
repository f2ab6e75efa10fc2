"""Credential store: users, devices and stored refresh tokens.

Functions here only flush; transaction boundaries belong to the caller.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from datetime import UTC, datetime

import bcrypt
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.config import get_settings
from notesync.constants import DEFAULT_DEVICE_NAME
from notesync.models import Device, RefreshToken, SyncLogEntry, User

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.lower().strip()


def _bcrypt_input(password: str) -> bytes:
    # bcrypt only accepts 72 bytes; SHA-256 + base64 is always 44.
    return base64.b64encode(hashlib.sha256(password.encode()).digest())


def hash_password(password: str, rounds: int | None = None) -> str:
    if rounds is None:
        rounds = get_settings().BCRYPT_ROUNDS
    return bcrypt.hashpw(_bcrypt_input(password), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_bcrypt_input(password), hashed.encode())
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# Compared against when the email is unknown so both login failures cost one bcrypt check.
_DUMMY_HASH: str | None = None


def burn_password_check(password: str) -> None:
    global _DUMMY_HASH
    if _DUMMY_HASH is None:
        _DUMMY_HASH = hash_password("notesync-dummy-password")
    verify_password(password, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def create_user(db: AsyncSession, email: str, password: str) -> User:
    user = User(
        email=normalize_email(email),
        password_hash=hash_password(password),
    )
    db.add(user)
    await db.flush()
    return user


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


async def get_device(db: AsyncSession, device_pk: int) -> Device | None:
    result = await db.execute(select(Device).where(Device.id == device_pk))
    return result.scalar_one_or_none()


async def get_owned_device(db: AsyncSession, user_id: int, device_pk: int) -> Device | None:
    """Return the device row only if it still belongs to *user_id*."""
    result = await db.execute(
        select(Device).where(Device.id == device_pk).where(Device.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def upsert_device(
    db: AsyncSession,
    user_id: int,
    device_id: str,
    device_name: str | None = None,
) -> Device:
    """Insert the ``(user_id, device_id)`` row or refresh its name and last sync time."""
    now = datetime.now(UTC)
    name = device_name or DEFAULT_DEVICE_NAME

    result = await db.execute(
        select(Device).where(Device.user_id == user_id).where(Device.device_id == device_id)
    )
    device = result.scalar_one_or_none()

    if device is None:
        device = Device(
            user_id=user_id,
            device_id=device_id,
            device_name=name,
            last_sync_at=now,
        )
        db.add(device)
    else:
        device.device_name = name
        device.last_sync_at = now

    await db.flush()
    return device


async def touch_device(db: AsyncSession, device_pk: int) -> None:
    await db.execute(
        update(Device).where(Device.id == device_pk).values(last_sync_at=datetime.now(UTC))
    )


async def list_devices(db: AsyncSession, user_id: int) -> list[Device]:
    result = await db.execute(
        select(Device)
        .where(Device.user_id == user_id)
        .order_by(Device.last_sync_at.desc(), Device.id.desc())
    )
    return list(result.scalars().all())


async def delete_device(db: AsyncSession, user_id: int, device_pk: int) -> bool:
    """Remove a device and every refresh token issued to it."""
    device = await get_owned_device(db, user_id, device_pk)
    if not device:
        return False

    await db.execute(delete(RefreshToken).where(RefreshToken.device_id == device_pk))
    await db.execute(
        update(SyncLogEntry).where(SyncLogEntry.device_id == device_pk).values(device_id=None)
    )
    await db.delete(device)
    await db.flush()
    return True


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


async def store_refresh_token(
    db: AsyncSession,
    user_id: int,
    device_pk: int,
    token: str,
    expires_at: datetime,
) -> RefreshToken:
    record = RefreshToken(
        user_id=user_id,
        device_id=device_pk,
        token=token,
        expires_at=expires_at,
    )
    db.add(record)
    await db.flush()
    return record


async def get_active_refresh_token(db: AsyncSession, token: str) -> RefreshToken | None:
    """Return the stored row for *token* if it exists and has not expired."""
    result = await db.execute(
        select(RefreshToken)
        .where(RefreshToken.token == token)
        .where(RefreshToken.expires_at > datetime.now(UTC))
    )
    return result.scalar_one_or_none()


async def delete_refresh_token(db: AsyncSession, token: str) -> int:
    result = await db.execute(delete(RefreshToken).where(RefreshToken.token == token))
    return result.rowcount or 0


async def delete_expired_refresh_tokens(db: AsyncSession) -> int:
    result = await db.execute(
        delete(RefreshToken).where(RefreshToken.expires_at <= datetime.now(UTC))
    )
    return result.rowcount or 0
