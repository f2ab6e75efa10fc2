from enum import StrEnum


class SyncState(StrEnum):
    DISCONNECTED = "disconnected"
    IDLE = "idle"
    SYNCING = "syncing"


class SyncOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class TokenType(StrEnum):
    ACCESS = "access"
    REFRESH = "refresh"


class ErrorKind(StrEnum):
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    ALREADY_IN_PROGRESS = "already_in_progress"
    AUTH_EXPIRED = "auth_expired"
    NETWORK_OR_TIMEOUT = "network_or_timeout"
    INTERNAL_ERROR = "internal_error"


class BridgeEvent(StrEnum):
    AUTH_STATE_CHANGED = "auth_state_changed"
    SYNC_STATUS_CHANGED = "sync_status_changed"
    SYNC_COMPLETED = "sync_completed"
    SYNC_ERROR = "sync_error"


DEFAULT_DEVICE_NAME = "Unknown Device"

# Window for the "recent changes" count reported by /sync/status.
RECENT_CHANGES_DAYS = 30
