"""Tests for the chunk stores and the index loader."""

import json
from unittest.mock import MagicMock

import numpy as np
import pytest
from sqlalchemy.exc import OperationalError

from coach_rag.core.exceptions import RetrievalUnavailable
from coach_rag.knowledge.models import ChunkFilter
from coach_rag.knowledge.store import InMemoryChunkStore, SqlChunkStore, load_index_store
from coach_rag.models.knowledge import (
    KnowledgeCategory,
    KnowledgeChunk,
    KnowledgeItem,
    KnowledgeStatus,
)

pytestmark = pytest.mark.integration


def _item(item_id, status=KnowledgeStatus.READY, user_id=None, categories=(), chunks=()):
    item = KnowledgeItem(id=item_id, title=f"Title {item_id}", status=status, user_id=user_id)
    item.categories = list(categories)
    item.chunks = [
        KnowledgeChunk(
            id=f"{item_id}_c{index}",
            chunk_index=index,
            content=f"{item_id} chunk {index}",
            embedding_data=embedding,
        )
        for index, embedding in enumerate(chunks)
    ]
    return item


@pytest.fixture
async def seeded(db_session):
    chest = KnowledgeCategory(name="chest")
    legs = KnowledgeCategory(name="legs")
    db_session.add_all(
        [
            _item("chest-guide", categories=[chest], chunks=["[1.0, 0.0]", "[0.8, 0.6]"]),
            _item("leg-guide", categories=[legs], chunks=["[0.0, 1.0]"]),
            _item("draft", status=KnowledgeStatus.PROCESSING, chunks=["[1.0, 0.0]"]),
            _item("private", user_id="user-2", categories=[chest], chunks=["[1.0, 0.0]"]),
            _item("mine", user_id="user-1", chunks=["[0.6, 0.8]"]),
            _item("broken", chunks=["not a vector", None, "[1.0, 0.0, 0.0]"]),
            _item("empty"),
        ]
    )
    await db_session.commit()


class TestSqlChunkStore:
    """Tests for SqlChunkStore.list_ready_chunks."""

    async def test_only_ready_items_with_embeddings(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter())

        ids = {r.id for r in records}
        assert "draft_c0" not in ids
        assert "broken_c1" not in ids
        assert {"chest-guide_c0", "chest-guide_c1", "leg-guide_c0"} <= ids

    async def test_records_carry_parent_metadata(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter())

        first = next(r for r in records if r.id == "chest-guide_c1")
        assert first.parent_item_id == "chest-guide"
        assert first.parent_title == "Title chest-guide"
        assert first.chunk_index == 1
        assert first.embedding == [0.8, 0.6]
        assert first.categories == ["chest"]

    async def test_malformed_embedding_is_flagged(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter())

        broken = next(r for r in records if r.id == "broken_c0")
        assert broken.malformed is True
        assert broken.embedding is None

    async def test_tenant_sees_own_and_shared_items(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter(tenant_id="user-1"))

        parents = {r.parent_item_id for r in records}
        assert "mine" in parents
        assert "chest-guide" in parents
        assert "private" not in parents

    async def test_no_tenant_sees_shared_items_only(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter())

        parents = {r.parent_item_id for r in records}
        assert "chest-guide" in parents
        assert "private" not in parents
        assert "mine" not in parents

    async def test_all_tenants_lifts_owner_restriction(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter(all_tenants=True))

        assert {"chest-guide", "private", "mine"} <= {r.parent_item_id for r in records}

    async def test_terms_filter_matches_content_case_insensitively(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter(terms=("LEG-GUIDE", "missing-word")))

        assert [r.id for r in records] == ["leg-guide_c0"]

    async def test_terms_filter_includes_chunks_without_vectors(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(ChunkFilter(terms=("broken",)))

        by_id = {r.id: r for r in records}
        assert set(by_id) == {"broken_c0", "broken_c1", "broken_c2"}
        assert by_id["broken_c1"].embedding is None
        assert by_id["broken_c1"].malformed is False
        assert by_id["broken_c0"].malformed is True

    async def test_category_filter(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        records = await store.list_ready_chunks(
            ChunkFilter(tenant_id="user-1", category_names=("chest",))
        )

        assert {r.parent_item_id for r in records} == {"chest-guide"}

    async def test_database_error_becomes_unavailable(self):
        def failing_factory():
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        store = SqlChunkStore(MagicMock(side_effect=failing_factory))

        with pytest.raises(RetrievalUnavailable, match="unreachable"):
            await store.list_ready_chunks(ChunkFilter())


class TestAuditEmbeddings:
    async def test_reports_problems_per_item(self, session_factory, seeded):
        store = SqlChunkStore(session_factory)

        entries = {e.item_id: e for e in await store.audit_embeddings(expected_dimension=2)}

        broken = entries["broken"]
        assert broken.total_chunks == 3
        assert broken.malformed == 1
        assert broken.missing == 1
        assert broken.wrong_dimension == 1
        assert broken.dimensions == [3]
        assert broken.healthy is False

        assert entries["chest-guide"].healthy is True
        assert entries["chest-guide"].dimensions == [2]
        assert entries["empty"].total_chunks == 0
        assert entries["draft"].status == "PROCESSING"


class TestInMemoryChunkStore:
    """Owner scoping and term filtering of InMemoryChunkStore."""

    @pytest.fixture
    def store(self, make_record):
        return InMemoryChunkStore(
            [
                make_record("shared", 0, 0.9, content="Squat depth and knee travel."),
                make_record("alice-private", 0, 0.9, content="Alice squat notes."),
                make_record("bob-private", 0, 0.9, content="Bob bench notes."),
            ],
            owners={"alice-private": "alice", "bob-private": "bob"},
        )

    @pytest.mark.parametrize(
        "chunk_filter,expected",
        [
            (ChunkFilter(), {"shared"}),
            (ChunkFilter(tenant_id="alice"), {"shared", "alice-private"}),
            (ChunkFilter(all_tenants=True), {"shared", "alice-private", "bob-private"}),
        ],
    )
    async def test_owner_scoping(self, store, chunk_filter, expected):
        records = await store.list_ready_chunks(chunk_filter)

        assert {r.parent_item_id for r in records} == expected

    async def test_terms_filter(self, store):
        records = await store.list_ready_chunks(ChunkFilter(tenant_id="alice", terms=("squat",)))

        assert {r.parent_item_id for r in records} == {"shared", "alice-private"}


class TestLoadIndexStore:
    def test_missing_index_gives_empty_store(self, tmp_path):
        store = load_index_store(tmp_path)

        assert store.chunk_count == 0

    async def test_loads_chunks_and_vectors(self, tmp_path):
        chunks = [
            {
                "id": "a_c00",
                "parent_item_id": "a",
                "parent_title": "A",
                "content": "first",
                "chunk_index": 0,
                "categories": ["chest"],
            },
            {
                "id": "b_c00",
                "parent_item_id": "b",
                "parent_title": "B",
                "content": "second",
                "chunk_index": 0,
            },
        ]
        (tmp_path / "chunks.json").write_text(json.dumps(chunks), encoding="utf-8")
        np.save(tmp_path / "embeddings.npy", np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32))

        store = load_index_store(tmp_path)
        records = await store.list_ready_chunks(ChunkFilter(category_names=("chest",)))

        assert store.chunk_count == 2
        assert [r.id for r in records] == ["a_c00"]
        assert records[0].embedding == [1.0, 0.0]

    def test_count_mismatch_raises(self, tmp_path):
        (tmp_path / "chunks.json").write_text("[]", encoding="utf-8")
        np.save(tmp_path / "embeddings.npy", np.zeros((1, 2), dtype=np.float32))

        with pytest.raises(ValueError, match="does not match"):
            load_index_store(tmp_path)
