"""Fixtures shared by the integration tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tests.integration.auth_helpers import client_headers, create_api_client, create_user

PASSWORD = "correct horse battery staple"


@pytest_asyncio.fixture()
async def api_client_creds(db_session: AsyncSession) -> tuple[str, str]:
    """A registered client as (client_id, secret)."""
    return await create_api_client(db_session, roles=["internal"])


@pytest_asyncio.fixture()
async def headers(api_client_creds: tuple[str, str]) -> dict[str, str]:
    client_id, secret = api_client_creds
    return client_headers(client_id, secret)


@pytest_asyncio.fixture()
async def password_user(db_session: AsyncSession) -> str:
    return await create_user(db_session, email="a@x.com", password=PASSWORD)


@pytest_asyncio.fixture()
async def staff_user(db_session: AsyncSession) -> str:
    return await create_user(
        db_session, email="staff@x.com", password=PASSWORD, roles=["sysadmin"]
    )


@pytest_asyncio.fixture()
async def racing_sessions(
    async_engine: AsyncEngine,
) -> AsyncGenerator[tuple[AsyncSession, AsyncSession], None]:
    """Two sessions on separate connections to the test database.

    SQLite only locks the whole file, so every transaction starts with
    BEGIN IMMEDIATE: the second writer waits for the first to commit and then
    reads its result, the way a row lock behaves on Postgres.
    """
    engine = create_async_engine(async_engine.url, connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _manual_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        async with factory() as first, factory() as second:
            yield first, second
    finally:
        await engine.dispose()
