"""Engine and session factories for the calls database."""
from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import settings

# Anything that opens an ``AsyncSession`` usable as ``async with factory() as session``.
SessionFactory = Callable[[], AsyncSession]


def build_engine(url: str | None = None) -> AsyncEngine:
    """Create the asyncpg engine; pipeline stages hold short transactions only."""

    connect_args: dict[str, object] = {"server_settings": {"application_name": "callgrade"}}
    if settings.database_ssl_required:
        connect_args["ssl"] = True
    return create_async_engine(
        url or settings.database_async_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        connect_args=connect_args,
    )


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Read-only session for request handlers; writes go through the services."""

    async with SessionLocal() as session:
        yield session


async def dispose_engine() -> None:
    await engine.dispose()
