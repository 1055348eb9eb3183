"""Scores stored chunks against a query vector.

Similarity search iterates in-process over the tenant's READY chunks. A
plain term search over chunk content backs it up when vectors find too little.
"""

import logging
import re

from coach_rag.knowledge.models import (
    ChunkFilter,
    ChunkRecord,
    RetrievalCandidate,
    RetrievalConfiguration,
    RetrievalDiagnostics,
)
from coach_rag.knowledge.similarity import cosine_similarity
from coach_rag.knowledge.store import ChunkStore
from coach_rag.observability import MetricsBackend, get_metrics_backend

logger = logging.getLogger(__name__)

DEFAULT_OVERSAMPLE_FACTOR = 3
DEFAULT_MIN_POOL_SIZE = 15

# Term search, used when vector search finds too little
KEYWORD_STOPWORDS = frozenset({"the", "and", "for", "with", "how", "what", "can"})
MIN_TERM_LENGTH = 3
KEYWORD_MIN_OVERLAP = 0.5
_WORD_PATTERN = re.compile(r"[a-z0-9]+")


class CandidateRetriever:
    """Ranks chunks from a store by cosine similarity.

    The returned pool is oversampled so later stages (diversification,
    category boosting) can reorder without starving it. The soft threshold
    only flags candidates as low confidence; nothing is dropped for score here.
    """

    def __init__(
        self,
        store: ChunkStore,
        oversample_factor: int = DEFAULT_OVERSAMPLE_FACTOR,
        min_pool_size: int = DEFAULT_MIN_POOL_SIZE,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.store = store
        self.oversample_factor = max(1, oversample_factor)
        self.min_pool_size = max(1, min_pool_size)
        self.metrics = metrics or get_metrics_backend()

    def pool_size(self, requested_count: int) -> int:
        """Number of candidates kept for ``requested_count`` final results."""
        return max(requested_count * self.oversample_factor, self.min_pool_size)

    async def retrieve(
        self,
        query_vector: list[float],
        chunk_filter: ChunkFilter,
        config: RetrievalConfiguration,
        requested_count: int | None = None,
        diagnostics: RetrievalDiagnostics | None = None,
    ) -> list[RetrievalCandidate]:
        """Fetch eligible chunks and return the ranked candidate pool.

        Args:
            query_vector: Embedded query.
            chunk_filter: Tenant and category restriction.
            config: Configuration read at call start.
            requested_count: Final result count the caller wants
                (defaults to ``config.max_chunks``).
            diagnostics: Per-call counters to update.

        Returns:
            Candidates sorted by descending similarity.

        Raises:
            RetrievalUnavailable: If the chunk store cannot be reached.
        """
        records = await self.store.list_ready_chunks(chunk_filter)
        return self.score(
            query_vector,
            records,
            config,
            requested_count=requested_count,
            diagnostics=diagnostics,
        )

    async def retrieve_keywords(
        self,
        query_text: str,
        chunk_filter: ChunkFilter,
        config: RetrievalConfiguration,
        requested_count: int | None = None,
        diagnostics: RetrievalDiagnostics | None = None,
    ) -> list[RetrievalCandidate]:
        """Term search over chunk content.

        The store prefilters on any term occurring in the content; each hit is
        then scored by the fraction of query terms it contains as whole words.
        Vectors are not needed, so chunks with missing or malformed embeddings
        can still be found this way.

        Returns:
            Keyword candidates sorted by descending term overlap.
        """
        terms = extract_search_terms(query_text)
        if not terms:
            return []

        records = await self.store.list_ready_chunks(chunk_filter.with_terms(terms))
        requested_count = requested_count or config.max_chunks

        matched: list[RetrievalCandidate] = []
        for record in records:
            overlap = term_overlap(terms, record.content)
            if overlap == 0.0:
                continue
            matched.append(
                RetrievalCandidate(
                    chunk_id=record.id,
                    parent_item_id=record.parent_item_id,
                    title=record.parent_title,
                    content=record.content,
                    chunk_index=record.chunk_index,
                    similarity=overlap,
                    categories=record.categories,
                    keyword_match=True,
                )
            )

        matched = sorted(matched, key=lambda c: c.similarity, reverse=True)
        pool = matched[: self.pool_size(requested_count)]
        if diagnostics is not None:
            diagnostics.record_scoring(c.key for c in matched)

        logger.debug(f"Keyword search for {terms} matched {len(matched)} chunks")
        return pool

    def score(
        self,
        query_vector: list[float],
        records: list[ChunkRecord],
        config: RetrievalConfiguration,
        requested_count: int | None = None,
        diagnostics: RetrievalDiagnostics | None = None,
    ) -> list[RetrievalCandidate]:
        """Score ``records`` against ``query_vector`` without touching the store."""
        requested_count = requested_count or config.max_chunks
        malformed: list[str] = []
        mismatched: list[str] = []

        scored: list[RetrievalCandidate] = []
        for record in records:
            if record.malformed:
                malformed.append(record.id)
                continue
            if record.embedding is None:
                continue
            if len(record.embedding) != len(query_vector):
                mismatched.append(record.id)
                continue

            similarity = cosine_similarity(query_vector, record.embedding)
            scored.append(
                RetrievalCandidate(
                    chunk_id=record.id,
                    parent_item_id=record.parent_item_id,
                    title=record.parent_title,
                    content=record.content,
                    chunk_index=record.chunk_index,
                    similarity=similarity,
                    categories=record.categories,
                    low_confidence=similarity < config.similarity_threshold,
                    high_relevance=similarity >= config.high_relevance_threshold,
                )
            )

        # sorted() is stable, so equal scores keep store order
        scored = sorted(scored, key=lambda c: c.similarity, reverse=True)
        pool = scored[: self.pool_size(requested_count)]

        if malformed or mismatched:
            logger.warning(
                f"Skipped {len(malformed)} malformed and {len(mismatched)} mismatched-length embeddings"
            )
            self.metrics.observe_malformed_vectors(len(malformed) + len(mismatched))

        if diagnostics is not None:
            diagnostics.record_scoring((c.key for c in scored), malformed, mismatched)

        top = f"{pool[0].similarity:.3f}" if pool else "n/a"
        logger.debug(f"Scored {len(scored)} chunks, kept pool of {len(pool)} (top={top})")
        return pool


def accept_candidates(
    candidates: list[RetrievalCandidate],
    threshold: float,
    limit: int | None = None,
) -> list[RetrievalCandidate]:
    """Hard threshold filter applied at final truncation, order preserved.

    Keyword matches carry term overlap rather than cosine similarity and are
    held to ``KEYWORD_MIN_OVERLAP`` instead of ``threshold``.
    """
    accepted = [
        c for c in candidates if c.similarity >= (KEYWORD_MIN_OVERLAP if c.keyword_match else threshold)
    ]
    if limit is not None:
        accepted = accepted[:limit]
    return accepted


def extract_search_terms(query: str) -> list[str]:
    """Lowercased query words worth matching, deduplicated in query order."""
    terms: list[str] = []
    for word in _WORD_PATTERN.findall(query.lower()):
        if len(word) < MIN_TERM_LENGTH or word in KEYWORD_STOPWORDS:
            continue
        if word not in terms:
            terms.append(word)
    return terms


def term_overlap(terms: list[str], text: str) -> float:
    """Fraction of ``terms`` found as whole words in ``text``."""
    if not terms:
        return 0.0
    lowered = text.lower()
    found = sum(1 for term in terms if re.search(rf"\b{re.escape(term)}\b", lowered))
    return found / len(terms)
