"""Shared test fixtures for the card intake test suite."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from card_intake.core.database import Base, get_db
from card_intake.main import app
from card_intake.modules.extraction.client import ExtractionClient
from card_intake.modules.extraction.image import ImageNormalizer
from card_intake.modules.submission.dependencies import (
    get_extraction_client,
    get_pipeline_config,
)
from card_intake.modules.submission.pipeline import SubmissionPipeline
from tests.factories import (
    FakeBackend,
    InMemoryAgentRegistry,
    InMemoryCardStore,
    extraction_json,
    make_agent,
    make_config,
)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(extraction_json(["Ali", "Hassan Mahmoud Saeed"], "29501011234567"))


@pytest.fixture
def registry() -> InMemoryAgentRegistry:
    return InMemoryAgentRegistry(make_agent())


@pytest.fixture
def store() -> InMemoryCardStore:
    return InMemoryCardStore()


@pytest.fixture
def pipeline(
    backend: FakeBackend, registry: InMemoryAgentRegistry, store: InMemoryCardStore
) -> SubmissionPipeline:
    return SubmissionPipeline(
        config=make_config(),
        registry=registry,
        store=store,
        extraction_client=ExtractionClient(backend),
        image_normalizer=ImageNormalizer(),
    )


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    backend: FakeBackend,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the ASGI app, wired to SQLite and the fake backend."""

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_pipeline_config] = lambda: make_config()
    app.dependency_overrides[get_extraction_client] = lambda: ExtractionClient(backend)

    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
