"""Error taxonomy shared by the server and the sync client.

Every failure that crosses a component boundary is one of these kinds.
``status_code`` is the HTTP status the gateway answers with; client-only
kinds (``AlreadyInProgress``, ``AuthExpired``, ``NetworkOrTimeout``) never
reach the wire and keep ``None``.
"""

from __future__ import annotations

from typing import Any

from notesync.constants import ErrorKind


class NoteSyncError(Exception):
    """Base class for all taxonomy errors.

    Attributes:
        kind: The :class:`ErrorKind` this error represents.
        message: A human-readable description, safe to show to the caller.
        details: Optional structured details (validation errors only).
    """

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    status_code: int | None = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(NoteSyncError):
    kind = ErrorKind.VALIDATION_ERROR
    status_code = 400
    default_message = "Invalid input"


class Conflict(NoteSyncError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    default_message = "Email already registered"


class InvalidCredentials(NoteSyncError):
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401
    default_message = "Invalid credentials"


class InvalidRefreshToken(NoteSyncError):
    kind = ErrorKind.INVALID_REFRESH_TOKEN
    status_code = 403
    default_message = "Invalid refresh token"


class AlreadyInProgress(NoteSyncError):
    kind = ErrorKind.ALREADY_IN_PROGRESS
    status_code = None
    default_message = "Sync already in progress"


class AuthExpired(NoteSyncError):
    kind = ErrorKind.AUTH_EXPIRED
    status_code = None
    default_message = "Authentication expired"


class NetworkOrTimeout(NoteSyncError):
    kind = ErrorKind.NETWORK_OR_TIMEOUT
    status_code = None
    default_message = "Network error or timeout"


class InternalError(NoteSyncError):
    pass
