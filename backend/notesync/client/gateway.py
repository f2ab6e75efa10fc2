"""Async HTTP client for the NoteSync session gateway and sync relay.

Handles:

- ``register`` / ``login`` / ``refresh`` / ``logout`` against ``/api/auth``
- Authenticated relay requests carrying a Bearer access token
- Mapping HTTP outcomes back onto the :mod:`notesync.errors` taxonomy

Token refresh is *not* done here: a rejected access token surfaces as
:class:`AccessTokenRejected` so the orchestrator can decide to refresh once.

Usage::

    async with SyncGatewayClient("http://localhost:3000") as gateway:
        auth = await gateway.login("a@example.com", "pw12345678", "dev-1")
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from notesync.errors import (
    Conflict,
    InternalError,
    InvalidCredentials,
    InvalidRefreshToken,
    NetworkOrTimeout,
    NoteSyncError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_ERRORS_BY_STATUS: dict[int, type[NoteSyncError]] = {
    400: ValidationError,
    401: InvalidCredentials,
    403: InvalidRefreshToken,
    409: Conflict,
}


class AccessTokenRejected(Exception):
    """Raised when the relay answers 401/403 to an authenticated request."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Access token rejected (HTTP {status_code})")


def _body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_for(response: httpx.Response) -> NoteSyncError:
    body = _body(response)
    message = body.get("error") if isinstance(body.get("error"), str) else None
    error_cls = _ERRORS_BY_STATUS.get(response.status_code, InternalError)
    return error_cls(message, details=body.get("details"))


class SyncGatewayClient:
    """Async client for the NoteSync server.

    Args:
        server_url: Base URL of the server (trailing slash is stripped).
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests use ``ASGITransport``).
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url: str = server_url.rstrip("/")
        self._client: httpx.AsyncClient = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
        )

    @property
    def server_url(self) -> str:
        return self._url

    # ------------------------------------------------------------------
    # Session gateway
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        device_id: str,
        device_name: str | None = None,
    ) -> dict:
        """Create an account from this device.

        Returns:
            ``{"user": {...}, "accessToken": ..., "refreshToken": ...}``

        Raises:
            Conflict: The email is already registered.
            ValidationError: The server rejected the request shape.
            NetworkOrTimeout: The server could not be reached in time.
        """
        payload = {"email": email, "password": password, "deviceId": device_id}
        if device_name:
            payload["deviceName"] = device_name
        return await self._post_json("/api/auth/register", payload)

    async def login(
        self,
        email: str,
        password: str,
        device_id: str,
        device_name: str | None = None,
    ) -> dict:
        """Log in from this device and receive a fresh token pair.

        Raises:
            InvalidCredentials: Unknown email or wrong password.
            NetworkOrTimeout: The server could not be reached in time.
        """
        payload = {"email": email, "password": password, "deviceId": device_id}
        if device_name:
            payload["deviceName"] = device_name
        return await self._post_json("/api/auth/login", payload)

    async def refresh(self, refresh_token: str) -> str:
        """Exchange *refresh_token* for a new access token.

        Raises:
            InvalidRefreshToken: The token is expired, revoked or malformed.
            NetworkOrTimeout: The server could not be reached in time.
        """
        data = await self._post_json("/api/auth/refresh", {"refreshToken": refresh_token})
        token = data.get("accessToken")
        if not token:
            raise InvalidRefreshToken()
        return token

    async def logout(self, refresh_token: str) -> None:
        await self._post_json("/api/auth/logout", {"refreshToken": refresh_token})

    # ------------------------------------------------------------------
    # Authenticated requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        access_token: str,
        **kwargs: Any,
    ) -> dict:
        """Perform an authenticated request against the server.

        Raises:
            AccessTokenRejected: The server answered 401 or 403.
            NetworkOrTimeout: Timeout or connection failure.
            NoteSyncError: Any other non-2xx answer.
        """
        headers = {"Authorization": f"Bearer {access_token}"}
        response = await self._send(method, path, headers=headers, **kwargs)

        if response.status_code in (401, 403):
            raise AccessTokenRejected(response.status_code)
        if response.is_error:
            raise _error_for(response)
        return _body(response)

    async def _post_json(self, path: str, payload: dict) -> dict:
        response = await self._send("POST", path, json=payload)
        if response.is_error:
            error = _error_for(response)
            logger.info("POST %s failed: HTTP %d (%s)", path, response.status_code, error.kind)
            raise error
        return _body(response)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, f"{self._url}{path}", **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise NetworkOrTimeout(f"Request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkOrTimeout(f"Could not reach server: {exc}") from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Dispose the underlying ``httpx.AsyncClient``."""
        await self._client.aclose()

    async def __aenter__(self) -> SyncGatewayClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
