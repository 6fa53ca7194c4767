from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from crmsync.core.config import get_settings


SessionFactory = async_sessionmaker[AsyncSession]


def build_engine(database_url: str) -> AsyncEngine:
    settings = get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools; SQLite uses its default pool.
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(engine, expire_on_commit=False)


@lru_cache
def get_engine() -> AsyncEngine:
    # Process-wide engine for the API and worker; tests build their own.
    return build_engine(get_settings().database_url)


@lru_cache
def get_session_factory() -> SessionFactory:
    return build_session_factory(get_engine())


async def ping(session_factory: SessionFactory) -> None:
    # Round-trip a trivial query; raises when the database is unreachable.
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
