"""Shared fixtures: a real async SQLAlchemy engine on a per-test SQLite file,
and a recorder standing in for the event bus at every emitting module."""

from __future__ import annotations

import importlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import railshop.models  # noqa: F401  registers every table on Base.metadata
from railshop.models.base import Base
from railshop.schemas.events import SystemEvent

# Modules that import `emit` or `emit_on_commit` from the bus
EMITTING_MODULES = (
    "railshop.api.routes",
    "railshop.workflow.machine",
    "railshop.estimates.decisions",
    "railshop.estimates.approval",
    "railshop.integrations.fleet.client",
    "railshop.integrations.notifications.client",
)


@pytest.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'railshop.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def emitted():
    """Record every SystemEvent emitted by the services instead of queueing it.

    Commit-bound events are recorded when they are raised, not at commit.
    """
    events: list[SystemEvent] = []

    async def _record(event: SystemEvent) -> None:
        events.append(event)

    def _record_on_commit(db, event: SystemEvent) -> None:
        events.append(event)

    patchers = []
    for module in EMITTING_MODULES:
        loaded = importlib.import_module(module)
        if hasattr(loaded, "emit"):
            patchers.append(patch(f"{module}.emit", new=AsyncMock(side_effect=_record)))
        if hasattr(loaded, "emit_on_commit"):
            patchers.append(patch(f"{module}.emit_on_commit", new=MagicMock(side_effect=_record_on_commit)))
    for p in patchers:
        p.start()
    yield events
    for p in patchers:
        p.stop()
