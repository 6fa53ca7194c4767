from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from crmsync.domain.models import Base
from crmsync.persistence.db import build_session_factory
from crmsync.services.telemetry import reset_telemetry


@pytest.fixture
async def engine(tmp_path):
    # File-backed SQLite so concurrent sessions get separate connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crmsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests():
    # Counters are process-wide; keep assertions isolated per test.
    reset_telemetry()
    yield
    reset_telemetry()
