import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables before importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-key-for-testing-only")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SYNC_SERVER_URL", "http://test")


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture(scope="function")
async def test_db(tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """Provide an async database session backed by a fresh SQLite file.

    Each test gets its own database file with all tables created.
    Uses a per-test engine to avoid event loop issues.
    """
    from notesync.database import Base, build_engine
    import notesync.models  # noqa: F401 - Import to register models with Base

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_factory() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_app(test_db: AsyncSession):
    """Provide a FastAPI app instance with test database override."""
    from notesync.database import get_db
    from notesync.main import app

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing with test database."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def register_device(
    client: AsyncClient,
    email: str = "alice@example.com",
    password: str = "password123",
    device_id: str = "laptop",
) -> dict:
    """Register (or log in, if the email exists) and return the token pair body."""
    payload = {"email": email, "password": password, "deviceId": device_id}
    response = await client.post("/api/auth/register", json=payload)
    if response.status_code == 409:
        response = await client.post("/api/auth/login", json=payload)
    assert response.status_code in (200, 201), response.text
    return response.json()


def make_auth_headers(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}
