"""Pytest configuration and fixtures for retrieval tests."""

import asyncio
import math
from typing import AsyncGenerator, Callable

import pytest
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from coach_rag.core.database import Base
from coach_rag.core.exceptions import EmbeddingUnavailable
from coach_rag.knowledge.models import ChunkRecord, RetrievalCandidate, RetrievalConfiguration
from coach_rag.observability import MetricsCollector

# Import all models to ensure they're registered with Base
from coach_rag.models import (  # noqa: F401
    KnowledgeCategory,
    KnowledgeChunk,
    KnowledgeItem,
    RetrievalConfigurationRow,
)

QUERY_VECTOR = [1.0, 0.0]


def vector_with_similarity(similarity: float) -> list[float]:
    """2-d unit vector whose cosine similarity to QUERY_VECTOR is ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity))]


class FakeEmbedder:
    """Embedding provider returning canned vectors.

    Texts listed in ``failures`` raise EmbeddingUnavailable; texts in
    ``failures_before_success`` fail that many times first.
    """

    name = "fake"

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: list[float] | None = None,
        failures: set[str] | None = None,
        failures_before_success: dict[str, int] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.vectors = vectors or {}
        self.default = default or QUERY_VECTOR
        self.failures = failures or set()
        self.failures_before_success = dict(failures_before_success or {})
        self.delays = delays or {}
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self.delays:
            await asyncio.sleep(self.delays[text])
        if text in self.failures:
            raise EmbeddingUnavailable(f"provider down for '{text}'")
        remaining = self.failures_before_success.get(text, 0)
        if remaining:
            self.failures_before_success[text] = remaining - 1
            raise EmbeddingUnavailable(f"transient failure for '{text}'")
        return list(self.vectors.get(text, self.default))


@pytest.fixture
def make_record() -> Callable[..., ChunkRecord]:
    """Factory for chunk records with a chosen similarity to QUERY_VECTOR."""

    def _make(
        parent: str,
        index: int,
        similarity: float | None = 0.5,
        categories: list[str] | None = None,
        title: str | None = None,
        content: str | None = None,
        embedding: list[float] | None = None,
        malformed: bool = False,
    ) -> ChunkRecord:
        if embedding is None and similarity is not None and not malformed:
            embedding = vector_with_similarity(similarity)
        return ChunkRecord(
            id=f"{parent}_c{index:02d}",
            parent_item_id=parent,
            parent_title=title or f"Article {parent}",
            content=content or f"Content of {parent} chunk {index}",
            chunk_index=index,
            embedding=embedding,
            categories=categories or [],
            malformed=malformed,
        )

    return _make


@pytest.fixture
def make_candidate() -> Callable[..., RetrievalCandidate]:
    """Factory for retrieval candidates."""

    def _make(
        parent: str,
        index: int,
        similarity: float,
        categories: list[str] | None = None,
        high_relevance: bool = False,
    ) -> RetrievalCandidate:
        return RetrievalCandidate(
            chunk_id=f"{parent}_c{index:02d}",
            parent_item_id=parent,
            title=f"Article {parent}",
            content=f"Content of {parent} chunk {index}",
            chunk_index=index,
            similarity=similarity,
            categories=categories or [],
            high_relevance=high_relevance,
        )

    return _make


@pytest.fixture
def config() -> RetrievalConfiguration:
    """Permissive configuration used by most retrieval tests."""
    return RetrievalConfiguration(
        similarity_threshold=0.25,
        high_relevance_threshold=0.85,
        max_chunks=5,
        per_source_cap=2,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


# -------------------------------------------------------------------------
# Database Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for seeding test data."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def embedder_factory() -> type[FakeEmbedder]:
    """The fake embedding provider class, configured per test."""
    return FakeEmbedder


@pytest.fixture
def similarity_vector() -> Callable[[float], list[float]]:
    return vector_with_similarity
