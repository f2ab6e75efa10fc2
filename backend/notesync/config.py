from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """NoteSync application settings.

    All values are loaded from environment variables.
    A .env file in the backend directory is also supported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Database ---
    DATABASE_URL: str = "postgresql+asyncpg://notesync:notesync@db:5432/notesync"

    # --- JWT ---
    JWT_SECRET: str = "change-this-secret-key"
    JWT_REFRESH_SECRET: str = "change-this-refresh-secret-key"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # --- Password hashing ---
    BCRYPT_ROUNDS: int = 12

    # --- Sync client ---
    SYNC_SERVER_URL: str = "http://localhost:3000"
    SYNC_INTERVAL_SECONDS: float = 180.0  # 3 minutes
    SYNC_REQUEST_TIMEOUT_SECONDS: float = 30.0
    SYNC_PULL_LIMIT: int = 1000
    SYNC_SESSION_FILE: str = ""  # empty = keep the session in memory only

    # --- Server ---
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    LOG_LEVEL: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses the asyncpg driver."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton."""
    return Settings()
