# test/conftest.py

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from mailla.config import Settings
from mailla.db import models  # noqa: F401  register tables
from mailla.services.repo import Repo


@pytest.fixture()
async def engine():
    # Shared in-memory DB across connections, fresh per test
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture()
def repo(session_factory):
    return Repo(session_factory)


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        openai_api_key=None,
        notification_webhook_url=None,
        history_window=12,
        llm_timeout_seconds=1.0,
    )

