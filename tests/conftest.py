"""Pytest configuration and fixtures for HeartBridge tests."""

from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from heartbridge.api.deps import get_chat_service, get_knowledge_service
from heartbridge.core.config import RetrievalPolicy, Settings
from heartbridge.core.database import Base
from heartbridge.knowledge.models import QueryUnderstanding
from heartbridge.main import app as main_app
from tests.fakes import FakeStore


# -------------------------------------------------------------------------
# SQLite JSONB Compatibility - Convert JSONB to JSON for SQLite
# -------------------------------------------------------------------------

@event.listens_for(Base.metadata, "before_create")
def _convert_jsonb_to_json(target, connection, **kw):
    """Convert JSONB columns to JSON for SQLite compatibility."""
    if connection.dialect.name == "sqlite":
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, JSONB):
                    column.type = JSON(none_as_null=column.type.none_as_null)

# Import all models to ensure they're registered with Base
from heartbridge.models import (  # noqa: E402
    ChatTurn,
    KnowledgeTerm,
    KnowledgeUnit,
    RAGQueryLog,
    StructuredRecord,
)


# -------------------------------------------------------------------------
# Database Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine backed by a file, so concurrent sessions work."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'heartbridge.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# -------------------------------------------------------------------------
# Settings / policy
# -------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        database_url="sqlite+aiosqlite:///:memory:",
        auto_create_tables=False,
    )


@pytest.fixture
def policy() -> RetrievalPolicy:
    return RetrievalPolicy()


# -------------------------------------------------------------------------
# Fakes for external collaborators
# -------------------------------------------------------------------------


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def mock_embedder() -> MagicMock:
    """Embedding client returning a fixed unit vector."""
    embedder = MagicMock()
    embedder.embed = AsyncMock(return_value=np.array([1.0, 0.0, 0.0], dtype=np.float32))
    embedder.embed_many = AsyncMock(
        side_effect=lambda texts: np.tile(np.array([1.0, 0.0, 0.0], dtype=np.float32), (len(texts), 1))
    )
    return embedder


@pytest.fixture
def mock_understander() -> MagicMock:
    understander = MagicMock()
    understander.understand = AsyncMock(
        return_value=QueryUnderstanding(keywords=["tantrum"], categories=["behavior"])
    )
    return understander


@pytest.fixture
def mock_model_client() -> MagicMock:
    client = MagicMock()
    client.complete = AsyncMock(return_value="Here is some guidance.")
    return client


# -------------------------------------------------------------------------
# HTTP Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def chat_service() -> MagicMock:
    service = MagicMock()
    service.handle = AsyncMock()
    service.history = AsyncMock(return_value=[])
    return service


@pytest.fixture
def knowledge_service() -> MagicMock:
    return MagicMock()


@pytest.fixture
def app(chat_service: MagicMock, knowledge_service: MagicMock) -> FastAPI:
    """FastAPI app with service dependencies replaced by mocks."""
    main_app.dependency_overrides[get_chat_service] = lambda: chat_service
    main_app.dependency_overrides[get_knowledge_service] = lambda: knowledge_service
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
