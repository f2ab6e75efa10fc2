"""Device-scoped JWT token service.

Issues, verifies and revokes access/refresh token pairs bound to a single
device row, so each device of a user holds an independent session.

Token types:
- **access**: Short-lived (default 15 min), stateless. Verified by signature
  and expiry only; carries ``userId`` and the internal ``deviceId``.
- **refresh**: Long-lived (default 7 days), signed with a separate secret and
  also stored in ``refresh_tokens``. Deleting the row revokes it.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.config import Settings, get_settings
from notesync.constants import TokenType
from notesync.database import get_db
from notesync.errors import Conflict, InternalError, InvalidCredentials, InvalidRefreshToken
from notesync.models import Device, User
from notesync.services.user_service import (
    burn_password_check,
    create_user,
    delete_expired_refresh_tokens,
    delete_refresh_token,
    get_active_refresh_token,
    get_owned_device,
    get_user_by_email,
    store_refresh_token,
    upsert_device,
    verify_password,
)

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=True)


@dataclass
class AuthResult:
    """Outcome of a successful register or login."""

    user: User
    device: Device
    access_token: str
    refresh_token: str


@dataclass
class CurrentDevice:
    """Identity extracted from a verified access token."""

    user_id: int
    device_pk: int
    device_id: str


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def _claims(user_id: int, device_pk: int, token_type: TokenType, expire: datetime) -> dict:
    return {
        "userId": user_id,
        "deviceId": device_pk,
        "type": str(token_type),
        "exp": expire,
        "jti": secrets.token_hex(8),
    }


def create_access_token(
    user_id: int,
    device_pk: int,
    expires_delta: timedelta | None = None,
    *,
    settings: Settings | None = None,
) -> str:
    """Create a JWT access token bound to ``(user_id, device_pk)``.

    Args:
        user_id: Owner of the device.
        device_pk: Internal ``devices.id`` (not the client-chosen device id).
        expires_delta: Custom lifetime. Falls back to config default.
        settings: Optional settings override (useful for testing).

    Returns:
        Encoded JWT string.
    """
    if settings is None:
        settings = get_settings()

    expire = datetime.now(UTC) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload = _claims(user_id, device_pk, TokenType.ACCESS, expire)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_refresh_token(
    user_id: int,
    device_pk: int,
    expires_delta: timedelta | None = None,
    *,
    settings: Settings | None = None,
) -> str:
    """Create a JWT refresh token signed with the refresh secret."""
    if settings is None:
        settings = get_settings()

    expire = datetime.now(UTC) + (
        expires_delta
        if expires_delta is not None
        else timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    )
    payload = _claims(user_id, device_pk, TokenType.REFRESH, expire)
    return jwt.encode(payload, settings.JWT_REFRESH_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str, *, settings: Settings | None = None) -> dict:
    """Decode and verify an access token.

    Raises:
        JWTError: If the token is invalid, expired, or tampered with.
    """
    if settings is None:
        settings = get_settings()

    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def verify_refresh_token(token: str, *, settings: Settings | None = None) -> dict:
    """Decode and verify a refresh token against the refresh secret.

    Raises:
        JWTError: If the token is invalid, expired, or tampered with.
    """
    if settings is None:
        settings = get_settings()

    return jwt.decode(token, settings.JWT_REFRESH_SECRET, algorithms=[settings.JWT_ALGORITHM])


async def _issue_token_pair(
    db: AsyncSession,
    user: User,
    device: Device,
    settings: Settings,
) -> AuthResult:
    access_token = create_access_token(user.id, device.id, settings=settings)
    refresh_token = create_refresh_token(user.id, device.id, settings=settings)

    expires_at = datetime.now(UTC) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    await store_refresh_token(db, user.id, device.id, refresh_token, expires_at)

    return AuthResult(
        user=user,
        device=device,
        access_token=access_token,
        refresh_token=refresh_token,
    )


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


async def register(
    db: AsyncSession,
    email: str,
    password: str,
    device_id: str,
    device_name: str | None = None,
    *,
    settings: Settings | None = None,
) -> AuthResult:
    """Create a user, its first device and a token pair in one transaction.

    Raises:
        Conflict: The email is already registered.
        InternalError: Any unexpected database failure (nothing is persisted).
    """
    if settings is None:
        settings = get_settings()

    if await get_user_by_email(db, email):
        raise Conflict()

    try:
        user = await create_user(db, email, password)
        device = await upsert_device(db, user.id, device_id, device_name)
        result = await _issue_token_pair(db, user, device, settings)
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent registration of the same email.
        await db.rollback()
        raise Conflict() from None
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Register failed for email=%s", email)
        raise InternalError() from None

    logger.info("User registered: user_id=%s, device=%s", user.id, device.id)
    return result


async def login(
    db: AsyncSession,
    email: str,
    password: str,
    device_id: str,
    device_name: str | None = None,
    *,
    settings: Settings | None = None,
) -> AuthResult:
    """Verify credentials, upsert the device and issue a fresh token pair.

    Raises:
        InvalidCredentials: Unknown email or wrong password (indistinguishable).
        InternalError: Any unexpected database failure.
    """
    if settings is None:
        settings = get_settings()

    user = await get_user_by_email(db, email)
    if user is None:
        burn_password_check(password)
    if not user or not verify_password(password, user.password_hash):
        logger.warning("Login failed for email=%s", email)
        raise InvalidCredentials()

    try:
        device = await upsert_device(db, user.id, device_id, device_name)
        result = await _issue_token_pair(db, user, device, settings)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Login failed for user_id=%s", user.id)
        raise InternalError() from None

    logger.info("User logged in: user_id=%s, device=%s", user.id, device.id)
    return result


async def refresh(
    db: AsyncSession,
    refresh_token: str,
    *,
    settings: Settings | None = None,
) -> str:
    """Exchange a stored, unexpired refresh token for a new access token.

    The refresh token itself is not rotated.

    Raises:
        InvalidRefreshToken: Bad signature, expired, wrong type, or no
            matching row in the store (revoked).
    """
    if settings is None:
        settings = get_settings()

    try:
        payload = verify_refresh_token(refresh_token, settings=settings)
    except JWTError:
        raise InvalidRefreshToken() from None

    if payload.get("type") != TokenType.REFRESH:
        raise InvalidRefreshToken()

    record = await get_active_refresh_token(db, refresh_token)
    if record is None:
        raise InvalidRefreshToken()

    if record.user_id != payload.get("userId") or record.device_id != payload.get("deviceId"):
        raise InvalidRefreshToken()

    return create_access_token(record.user_id, record.device_id, settings=settings)


async def logout(db: AsyncSession, refresh_token: str) -> None:
    """Delete the stored refresh token. Unknown tokens are ignored."""
    try:
        deleted = await delete_refresh_token(db, refresh_token)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Logout failed")
        raise InternalError() from None

    logger.info("Logout: %d refresh token(s) revoked", deleted)


async def purge_expired_refresh_tokens(db: AsyncSession) -> int:
    """Housekeeping sweep for expired refresh-token rows."""
    deleted = await delete_expired_refresh_tokens(db)
    await db.commit()
    if deleted:
        logger.info("Purged %d expired refresh token(s)", deleted)
    return deleted


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------


async def get_current_device(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> CurrentDevice:
    """FastAPI dependency that authenticates a request by its access token.

    The token must verify, be an access token, and name a device row that is
    still owned by the token's user. A revoked device is rejected even while
    its access tokens have not expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Invalid or expired token",
    )

    try:
        payload = verify_access_token(token)
    except JWTError:
        raise credentials_exception from None

    if payload.get("type") != TokenType.ACCESS:
        raise credentials_exception

    user_id = payload.get("userId")
    device_pk = payload.get("deviceId")
    if user_id is None or device_pk is None:
        raise credentials_exception

    device = await get_owned_device(db, user_id, device_pk)
    if device is None:
        logger.warning("Token for unknown device rejected: user_id=%s, device=%s", user_id, device_pk)
        raise credentials_exception

    return CurrentDevice(user_id=user_id, device_pk=device.id, device_id=device.device_id)
