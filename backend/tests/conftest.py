"""Pytest configuration and fixtures for onboarding service tests.

Tests run against an in-memory SQLite database (aiosqlite) with a fake
clock and a low-cost scrypt setting.  No Postgres or Redis is needed:
rate limiting is switched off before the app is imported.
"""

import base64
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from onboarding.config import Settings
from onboarding.database import Base
from onboarding.dependencies import ServiceContainer
from onboarding.models.onboarding_session import OnboardingSession
from onboarding.services.encryption import StateCipher

TEST_SECRET = "test-master-secret-for-onboarding"
TEST_SCRYPT_N = 2 ** 10


class FakeClock:
    """Callable clock for the store; advance it to simulate elapsed time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cipher() -> StateCipher:
    return StateCipher(TEST_SECRET, scrypt_n=TEST_SCRYPT_N)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        rate_limit_enabled=False,
        onboarding_encryption_key=TEST_SECRET,
        maintenance_api_key="",
    )


@pytest.fixture
def services(test_settings, session_factory, cipher, clock) -> ServiceContainer:
    return ServiceContainer.build(
        test_settings, session_factory=session_factory, cipher=cipher, clock=clock
    )


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def recovery(services):
    return services.recovery


@pytest.fixture
def cleanup(services):
    return services.cleanup


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app with the test services installed."""
    from onboarding.main import app

    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.services = None


# ── Storage-level helpers ────────────────────────────────────────

async def load_row(session_factory, session_id: str) -> OnboardingSession | None:
    async with session_factory() as db:
        result = await db.execute(
            select(OnboardingSession).where(OnboardingSession.id == session_id)
        )
        return result.scalar_one_or_none()


async def set_columns(session_factory, session_id: str, **values) -> None:
    """Write columns directly, bypassing the store."""
    async with session_factory() as db:
        await db.execute(
            update(OnboardingSession)
            .where(OnboardingSession.id == session_id)
            .values(**values)
        )
        await db.commit()


async def write_raw_state(session_factory, cipher, session_id: str, raw) -> None:
    """Encrypt an arbitrary (possibly invalid) state straight into the row."""
    await set_columns(session_factory, session_id, state=cipher.encrypt(raw))


async def read_raw_state(session_factory, cipher, session_id: str):
    row = await load_row(session_factory, session_id)
    return cipher.decrypt(row.state)


async def flip_state_byte(session_factory, session_id: str, offset: int = -1) -> None:
    """Corrupt one byte of the stored blob while keeping it valid base64."""
    row = await load_row(session_factory, session_id)
    raw = bytearray(base64.b64decode(row.state))
    raw[offset] ^= 0x01
    await set_columns(
        session_factory, session_id, state=base64.b64encode(bytes(raw)).decode("ascii")
    )


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Store-backed tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
