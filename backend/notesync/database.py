"""Async engine and sessions for the gateway's credential store and sync log.

PostgreSQL (asyncpg) in deployment, SQLite (aiosqlite) in tests. Both go
through :func:`build_engine` so foreign keys behave the same on either.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from notesync.config import get_settings


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for *url*.

    SQLite does not enforce ``ON DELETE`` rules unless asked per connection,
    so the pragma is switched on for every new SQLite connection.
    """
    kwargs.setdefault("echo", False)
    if "poolclass" not in kwargs:
        kwargs.setdefault("pool_pre_ping", True)
    engine = create_async_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = build_engine(get_settings().async_database_url)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for users, devices, refresh tokens and the sync log."""


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back on error.

    Services flush only, so one request is one transaction::

        @router.post("/sync/push")
        async def push(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
