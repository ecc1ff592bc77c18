"""Async SQLAlchemy engine and session helpers."""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from authgate.config import settings
from authgate.utils.db_url import prepare_database_url

DATABASE_URL, CONNECT_ARGS = prepare_database_url(settings.database_url)

engine = create_async_engine(
    DATABASE_URL,
    echo=settings.sql_echo,
    pool_pre_ping=True,
    connect_args=CONNECT_ARGS,
)
# Services read attributes after their transaction commits
SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session with no open transaction; each service call begins its own."""
    async with SessionLocal() as session:
        yield session


async def init_db() -> None:
    """Create any missing tables (dev only; deployments run Alembic)."""
    from authgate.schemas import auth  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def dispose_engine() -> None:
    await engine.dispose()
