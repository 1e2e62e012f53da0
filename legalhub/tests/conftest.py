from __future__ import annotations

import asyncio
import os

# Point the app at a throwaway SQLite file before any legalhub module builds its engine.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.legalhub_test.db")
os.environ.setdefault("SYNC_LOCK_BACKEND", "local")
os.environ.setdefault("PLATFORM_TOKENS", "platform-test-token")
os.environ.setdefault("VENDOR_RETRY_BACKOFF_MS", "1")

import pytest
from sqlalchemy import delete

from legalhub.core.config import get_settings
from legalhub.domain.models import Base
from legalhub.persistence.db import SessionLocal, engine
from legalhub.services.gateway import drain_background_tasks
from legalhub.services.telemetry import reset_telemetry


async def _create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build the schema once on its own loop; tests share the file.
    asyncio.run(_create_schema())
    yield


@pytest.fixture(autouse=True)
async def isolate_state_between_tests() -> None:
    # Empty every table and in-process buffer so tests never see each other's rows.
    yield
    await drain_background_tasks()
    async with SessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(delete(table))
        await session.commit()
    await engine.dispose()
    reset_telemetry()
    get_settings.cache_clear()
