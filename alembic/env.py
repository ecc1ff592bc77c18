"""Alembic environment: runs authgate migrations through the app's async drivers."""
import asyncio
import logging
import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

# Registers every auth table on SQLModel.metadata
from authgate.schemas import auth  # noqa: F401
from authgate.utils.db_url import describe_database_url, prepare_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# A local .env is enough to migrate a dev database
load_dotenv(Path(__file__).resolve().parent.parent / ".env", override=False)

raw_url = os.getenv("DATABASE_URL")
if not raw_url:
    raise RuntimeError("DATABASE_URL is required for Alembic migrations")

target = prepare_database_url(raw_url)
config.set_main_option("sqlalchemy.url", target.url.replace("%", "%%"))
target_metadata = SQLModel.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=target.is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    _configure(url=target.url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(
        target.url,
        poolclass=pool.NullPool,
        connect_args=target.connect_args,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    logging.getLogger("alembic.env").info("Migrating %s", describe_database_url(target.url))
    asyncio.run(run_migrations_online())
