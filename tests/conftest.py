"""Shared fixtures: in-memory SQLite database, a controllable clock, API client."""
from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.deps import DbSession, get_engine, get_registry
from orchestrator.db.session import create_schema, get_db_session, make_engine, make_session_factory
from orchestrator.engine import Engine
from orchestrator.main import app
from orchestrator.pipelines.definitions import PipelineDefinition
from orchestrator.pipelines.registry import PipelineRegistry


class FakeClock:
    """Time only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db_engine():
    engine = make_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def registry() -> PipelineRegistry:
    return PipelineRegistry([
        PipelineDefinition.model_validate({
            "name": "etl",
            "tasks": [
                {"name": "extract", "payload": {"source": "s3://bucket"}},
                {"name": "transform", "depends_on": ["extract"]},
                {"name": "report", "depends_on": ["extract"], "optional": True},
                {"name": "load", "depends_on": ["transform"]},
            ],
        }),
        PipelineDefinition.model_validate({
            "name": "strict",
            "failure_policy": "fail_fast",
            "tasks": [
                {"name": "a", "max_attempts": 1},
                {"name": "b"},
                {"name": "c", "depends_on": ["a", "b"]},
            ],
        }),
        PipelineDefinition.model_validate({
            "name": "enrichment",
            "tasks": [
                {"name": "ingest"},
                {"name": "enrich", "depends_on": ["ingest"], "optional": True, "max_attempts": 1},
                {"name": "publish", "depends_on": ["enrich"]},
                {"name": "archive", "depends_on": ["ingest"]},
            ],
        }),
    ])


@pytest.fixture
def engine(session, registry, clock) -> Engine:
    return Engine(session, registry=registry, clock=clock)


@pytest_asyncio.fixture
async def client(session_factory, registry, clock) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_session():
        async with session_factory() as session:
            yield session

    def override_get_engine(session: DbSession) -> Engine:
        return Engine(session, registry=registry, clock=clock)

    app.dependency_overrides[get_db_session] = override_get_session
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_engine] = override_get_engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
