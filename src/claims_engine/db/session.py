"""Async engine and session factory for the claims store."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from claims_engine.core.settings import settings
from claims_engine.db.base import Base

engine = create_async_engine(settings.database_url, echo=settings.database_echo, future=True)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session for hosting request handlers."""

    async with async_session() as session:
        yield session


async def create_all() -> None:
    """Create every engine table; migrations remain the production path."""

    import claims_engine.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
