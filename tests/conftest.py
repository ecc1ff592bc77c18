"""Pytest fixtures backed by a throwaway SQLite database per test."""

import os
from typing import AsyncGenerator

# Settings are read at import time, so the environment must be fixed first.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["PASSWORD_HASH_ITERATIONS"] = "1000"
os.environ["DEBUG_KEY"] = "test-debug-key"
os.environ["RESEND_API_KEY"] = ""
os.environ["AUTO_INIT_DB"] = "false"

import pytest
import pytest_asyncio

from httpx import AsyncClient, ASGITransport
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from authgate.services import audit


@pytest_asyncio.fixture()
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Yield an engine bound to a fresh database file with every table created."""
    # Ensure SQLModel metadata is populated before creating tables.
    from authgate.schemas import auth  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'authgate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session with no open transaction; services begin their own."""
    session_factory = async_sessionmaker(
        async_engine, expire_on_commit=False, class_=AsyncSession
    )
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def app_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an HTTP client with the application wired to the test session."""
    try:
        from authgate.main import app
    except ValidationError as exc:  # pragma: no cover - guard for misconfigured env
        pytest.skip(f"App configuration failed: {exc}")

    from authgate.utils.db_async import get_session

    async def _get_session_override() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_session] = _get_session_override
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.pop(get_session, None)


@pytest.fixture()
def audit_events():
    """Collect audit records emitted during a test."""
    records: list[audit.AuditRecord] = []
    sink = records.append
    audit.register_sink(sink)
    try:
        yield records
    finally:
        audit.unregister_sink(sink)
