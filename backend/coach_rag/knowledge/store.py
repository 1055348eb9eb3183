"""Read-only chunk stores.

``SqlChunkStore`` reads the knowledge tables through an async SQLAlchemy
session factory. ``InMemoryChunkStore`` serves records held in memory,
either built directly or loaded from a prebuilt index directory
(``chunks.json`` + ``embeddings.npy``).
"""

import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coach_rag.core.exceptions import MalformedEmbedding, RetrievalUnavailable
from coach_rag.knowledge.models import ChunkFilter, ChunkRecord
from coach_rag.knowledge.similarity import parse_embedding
from coach_rag.models.knowledge import (
    KnowledgeCategory,
    KnowledgeChunk,
    KnowledgeItem,
    KnowledgeStatus,
    knowledge_item_categories,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class ChunkStore(Protocol):
    """Source of searchable chunks."""

    async def list_ready_chunks(self, chunk_filter: ChunkFilter) -> list[ChunkRecord]:
        """Chunks of READY items matching the filter.

        Raises:
            RetrievalUnavailable: If the store cannot be reached.
        """
        ...


class EmbeddingAuditEntry(BaseModel):
    """Embedding health of one knowledge item."""

    item_id: str
    title: str
    status: str
    total_chunks: int = 0
    missing: int = 0
    malformed: int = 0
    wrong_dimension: int = 0
    dimensions: list[int] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not (self.missing or self.malformed or self.wrong_dimension)


class SqlChunkStore:
    """Chunk store backed by the knowledge tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_ready_chunks(self, chunk_filter: ChunkFilter) -> list[ChunkRecord]:
        stmt = (
            select(KnowledgeChunk, KnowledgeItem.title)
            .join(KnowledgeItem, KnowledgeChunk.knowledge_item_id == KnowledgeItem.id)
            .where(KnowledgeItem.status == KnowledgeStatus.READY)
            .order_by(KnowledgeChunk.knowledge_item_id, KnowledgeChunk.chunk_index)
        )
        if chunk_filter.terms is None:
            stmt = stmt.where(KnowledgeChunk.embedding_data.is_not(None))
        else:
            stmt = stmt.where(
                or_(*(KnowledgeChunk.content.ilike(f"%{term}%") for term in chunk_filter.terms))
            )
        if not chunk_filter.all_tenants:
            # Without a tenant only shared items are visible
            visible = KnowledgeItem.user_id.is_(None)
            if chunk_filter.tenant_id is not None:
                visible = or_(KnowledgeItem.user_id == chunk_filter.tenant_id, visible)
            stmt = stmt.where(visible)
        if chunk_filter.category_names is not None:
            stmt = stmt.where(
                KnowledgeItem.categories.any(
                    KnowledgeCategory.name.in_(chunk_filter.category_names)
                )
            )

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                item_ids = {chunk.knowledge_item_id for chunk, _ in rows}
                categories = await self._categories_for(session, item_ids)
        except SQLAlchemyError as e:
            logger.error(f"Chunk store query failed: {e}")
            raise RetrievalUnavailable(f"Chunk store unreachable: {e}") from e

        records: list[ChunkRecord] = []
        for chunk, title in rows:
            embedding: list[float] | None = None
            malformed = False
            if chunk.embedding_data is not None:
                try:
                    embedding = parse_embedding(chunk.embedding_data)
                except MalformedEmbedding as e:
                    logger.warning(f"Skipping embedding of chunk {chunk.id}: {e}")
                    malformed = True

            records.append(
                ChunkRecord(
                    id=chunk.id,
                    parent_item_id=chunk.knowledge_item_id,
                    parent_title=title,
                    content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    embedding=embedding,
                    categories=categories.get(chunk.knowledge_item_id, []),
                    malformed=malformed,
                )
            )

        logger.debug(
            f"Loaded {len(records)} ready chunks "
            f"(tenant={chunk_filter.tenant_id}, categories={chunk_filter.category_names})"
        )
        return records

    async def _categories_for(
        self,
        session: AsyncSession,
        item_ids: set[str],
    ) -> dict[str, list[str]]:
        if not item_ids:
            return {}
        stmt = (
            select(knowledge_item_categories.c.knowledge_item_id, KnowledgeCategory.name)
            .join(
                KnowledgeCategory,
                KnowledgeCategory.id == knowledge_item_categories.c.category_id,
            )
            .where(knowledge_item_categories.c.knowledge_item_id.in_(item_ids))
            .order_by(KnowledgeCategory.name)
        )
        mapping: dict[str, list[str]] = defaultdict(list)
        for item_id, name in (await session.execute(stmt)).all():
            mapping[item_id].append(name)
        return mapping

    async def audit_embeddings(self, expected_dimension: int) -> list[EmbeddingAuditEntry]:
        """Report missing, malformed and wrong-length vectors for every item."""
        stmt = (
            select(
                KnowledgeItem.id,
                KnowledgeItem.title,
                KnowledgeItem.status,
                KnowledgeChunk.id,
                KnowledgeChunk.embedding_data,
            )
            .join(KnowledgeChunk, KnowledgeChunk.knowledge_item_id == KnowledgeItem.id, isouter=True)
            .order_by(KnowledgeItem.id, KnowledgeChunk.chunk_index)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise RetrievalUnavailable(f"Chunk store unreachable: {e}") from e

        entries: dict[str, EmbeddingAuditEntry] = {}
        for item_id, title, status, chunk_id, embedding_data in rows:
            entry = entries.get(item_id)
            if entry is None:
                entry = EmbeddingAuditEntry(
                    item_id=item_id,
                    title=title,
                    status=status.value if isinstance(status, KnowledgeStatus) else str(status),
                )
                entries[item_id] = entry
            if chunk_id is None:
                # item without chunks
                continue

            entry.total_chunks += 1
            if embedding_data is None:
                entry.missing += 1
                continue
            try:
                vector = parse_embedding(embedding_data)
            except MalformedEmbedding:
                entry.malformed += 1
                continue
            if len(vector) not in entry.dimensions:
                entry.dimensions.append(len(vector))
            if len(vector) != expected_dimension:
                entry.wrong_dimension += 1

        return list(entries.values())


class InMemoryChunkStore:
    """Chunk store over records held in memory.

    Records carry no status, so everything given here is treated as READY.
    ``owners`` maps parent item ids to tenant ids; unmapped items are shared.
    """

    def __init__(
        self,
        records: list[ChunkRecord] | None = None,
        owners: dict[str, str] | None = None,
    ) -> None:
        self.records: list[ChunkRecord] = list(records or [])
        self.owners: dict[str, str] = dict(owners or {})

    @property
    def chunk_count(self) -> int:
        """Number of held chunks."""
        return len(self.records)

    async def list_ready_chunks(self, chunk_filter: ChunkFilter) -> list[ChunkRecord]:
        wanted = set(chunk_filter.category_names) if chunk_filter.category_names is not None else None
        result: list[ChunkRecord] = []
        terms = chunk_filter.terms
        for record in self.records:
            if terms is None and record.embedding is None and not record.malformed:
                continue
            if terms is not None and not any(term in record.content.lower() for term in terms):
                continue
            owner = self.owners.get(record.parent_item_id)
            if not chunk_filter.all_tenants and owner is not None and owner != chunk_filter.tenant_id:
                continue
            if wanted is not None and not wanted.intersection(record.categories):
                continue
            result.append(record)
        return result


def load_index_store(index_dir: Path | None = None) -> InMemoryChunkStore:
    """Load a prebuilt index directory into an in-memory store.

    Args:
        index_dir: Directory containing chunks.json and embeddings.npy.
            Defaults to the 'index' subdirectory of this module.

    Returns:
        The loaded store, empty when the index files are missing.

    Raises:
        ValueError: If chunk and embedding counts differ.
    """
    if index_dir is None:
        index_dir = Path(__file__).parent / "index"

    chunks_path = index_dir / "chunks.json"
    embeddings_path = index_dir / "embeddings.npy"

    if not chunks_path.exists() or not embeddings_path.exists():
        logger.warning(
            f"Knowledge index not found at {index_dir}. "
            "Retrieval will run without grounding."
        )
        return InMemoryChunkStore()

    with open(chunks_path, encoding="utf-8") as f:
        chunks_data = json.load(f)

    embeddings: NDArray[np.float32] = np.load(embeddings_path)

    if len(chunks_data) != embeddings.shape[0]:
        raise ValueError(
            f"Chunk count ({len(chunks_data)}) does not match "
            f"embedding count ({embeddings.shape[0]})"
        )

    records = [
        ChunkRecord(**{**data, "embedding": embeddings[i].astype(float).tolist()})
        for i, data in enumerate(chunks_data)
    ]
    logger.info(
        f"Knowledge index loaded: {len(records)} chunks, "
        f"{embeddings.shape[1] if embeddings.ndim == 2 else 0}-dim embeddings"
    )
    return InMemoryChunkStore(records)
