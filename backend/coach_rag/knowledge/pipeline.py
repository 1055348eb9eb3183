"""Composed retrieval entry points used by the chat and generation layers."""

import logging
import time
from typing import Awaitable, Callable, Iterable

from coach_rag.core.config import Settings, get_settings
from coach_rag.core.exceptions import RetrievalFailed, RetrievalUnavailable
from coach_rag.knowledge.citations import build_repair_instructions, validate
from coach_rag.knowledge.config_store import ConfigStore, load_configuration
from coach_rag.knowledge.context import (
    CITATION_INSTRUCTIONS,
    UNGROUNDED_NOTICE,
    assemble,
    citations_for,
)
from coach_rag.knowledge.diversifier import diversify
from coach_rag.knowledge.embeddings import EmbeddingProvider, RetryPolicy
from coach_rag.knowledge.intent import classify_intent
from coach_rag.knowledge.models import (
    ChunkFilter,
    ConversationMessage,
    GroundedAnswer,
    QueryIntent,
    RetrievalCandidate,
    RetrievalConfiguration,
    RetrievalDiagnostics,
    RetrievedContext,
    ValidationReport,
)
from coach_rag.knowledge.planner import QueryPlanner, contextualize_query
from coach_rag.knowledge.prioritizer import prioritize
from coach_rag.knowledge.retriever import CandidateRetriever
from coach_rag.knowledge.store import ChunkStore
from coach_rag.observability import MetricsBackend, get_metrics_backend, retrieval_scope

logger = logging.getLogger(__name__)

Generate = Callable[[str], Awaitable[str]]

# Global pipeline instance
_pipeline_instance: "RetrievalPipeline | None" = None

QUALITY_BUCKETS: tuple[tuple[str, float], ...] = (
    ("excellent", 0.8),
    ("good", 0.6),
    ("acceptable", 0.4),
)


def quality_buckets(candidates: list[RetrievalCandidate]) -> dict[str, int]:
    """Count candidates per similarity quality band."""
    counts = {name: 0 for name, _ in QUALITY_BUCKETS}
    counts["weak"] = 0
    for candidate in candidates:
        for name, bound in QUALITY_BUCKETS:
            if candidate.similarity >= bound:
                counts[name] += 1
                break
        else:
            counts["weak"] += 1
    return counts


class RetrievalPipeline:
    """Chains planning, retrieval, ranking and context assembly.

    The retrieval configuration is read once at the start of each call and
    passed down explicitly; nothing mutable is shared between calls.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        config_store: ConfigStore,
        embedder: EmbeddingProvider,
        settings: Settings | None = None,
        metrics: MetricsBackend | None = None,
        planner: QueryPlanner | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.config_store = config_store
        self.metrics = metrics or get_metrics_backend()
        self.retriever = CandidateRetriever(
            chunk_store,
            oversample_factor=self.settings.rag_oversample_factor,
            min_pool_size=self.settings.rag_min_pool_size,
            metrics=self.metrics,
        )
        self.planner = planner or QueryPlanner(
            embedder,
            self.retriever,
            primary_retry=RetryPolicy.from_settings(self.settings),
            secondary_retry=RetryPolicy.no_retry(),
            primary_budget_ratio=self.settings.rag_primary_budget_ratio,
            secondary_budget=self.settings.rag_secondary_budget,
            relaxed_margin=self.settings.rag_relaxed_threshold_margin,
            relaxed_floor=self.settings.rag_relaxed_threshold_floor,
            metrics=self.metrics,
        )
        self.default_timeout = self.settings.rag_retrieval_timeout_seconds

    async def retrieve_context(
        self,
        query: str,
        tenant_id: str | None,
        conversation_history: Iterable[ConversationMessage] | None = None,
        multi_query: bool | None = None,
        require_grounding: bool = False,
        timeout: float | None = None,
        all_tenants: bool = False,
    ) -> RetrievedContext:
        """Retrieve and format grounding for ``query``.

        Args:
            query: User message.
            tenant_id: Owner whose private items are searched with the shared
                base. None searches the shared base only.
            conversation_history: Prior messages, used to resolve follow-ups.
            multi_query: Force single or multi-query mode; None decides from the query.
            require_grounding: Raise instead of returning an ungrounded context.
            timeout: Overall deadline in seconds (defaults to settings).
            all_tenants: Search every owner's items. For admin tooling only.

        Returns:
            The context block and the citations it offers. When nothing could
            be retrieved, ``grounded`` is False and the block carries the
            ungrounded notice.

        Raises:
            RetrievalFailed: Only with ``require_grounding``, when no grounding
                could be produced.
            RetrievalUnavailable: Only with ``require_grounding``, when the
                chunk store is unreachable.
        """
        start = time.perf_counter()
        diagnostics = RetrievalDiagnostics()

        with retrieval_scope(tenant_id=tenant_id):
            config, fell_back = await load_configuration(self.config_store, tenant_id, self.settings)
            diagnostics.config_fallback = fell_back

            if not config.use_knowledge_base:
                logger.info("Knowledge base disabled by configuration")
                if require_grounding:
                    raise RetrievalFailed("Knowledge base is disabled", reason="disabled")
                return self._ungrounded(diagnostics)

            effective_query = contextualize_query(query, conversation_history)
            if effective_query != query:
                logger.debug(f"Follow-up query expanded to: {effective_query[:100]}")
            intent = classify_intent(effective_query)

            try:
                final = await self._run(
                    effective_query,
                    ChunkFilter(tenant_id=tenant_id, all_tenants=all_tenants),
                    intent,
                    config,
                    diagnostics,
                    multi_query,
                    timeout if timeout is not None else self.default_timeout,
                )
            except (RetrievalFailed, RetrievalUnavailable) as e:
                self._observe(diagnostics, False, start, 0)
                if require_grounding:
                    logger.error(f"Retrieval failed for grounded request: {e}")
                    raise
                logger.warning(f"Retrieval failed, answering without grounding: {e}")
                return self._ungrounded(diagnostics, intent)

            if not final:
                self._observe(diagnostics, True, start, 0)
                reason = "empty_knowledge_base" if diagnostics.candidates_scored == 0 else "no_match"
                if require_grounding:
                    raise RetrievalFailed("No knowledge base content matched the query", reason=reason)
                logger.info(f"No grounding found ({reason})")
                return self._ungrounded(diagnostics, intent)

            diagnostics.quality = quality_buckets(final)
            for warning in diagnostics.warnings:
                logger.warning(f"Retrieval degraded: {warning}")

            self._observe(diagnostics, True, start, len(final))
            logger.info(
                f"Retrieved {len(final)} chunks via {diagnostics.strategy_used} "
                f"(multi_query={diagnostics.multi_query}, quality={diagnostics.quality})"
            )
            return RetrievedContext(
                context_block=assemble(final),
                citations_available=citations_for(final),
                candidates=final,
                grounded=True,
                intent=intent,
                diagnostics=diagnostics,
            )

    async def _run(
        self,
        query: str,
        chunk_filter: ChunkFilter,
        intent: QueryIntent,
        config: RetrievalConfiguration,
        diagnostics: RetrievalDiagnostics,
        multi_query: bool | None,
        timeout: float | None,
    ) -> list[RetrievalCandidate]:
        sub_queries = self.planner.plan(query, config, multi_query=multi_query)
        merged = await self.planner.execute(
            sub_queries,
            chunk_filter,
            config,
            intent,
            diagnostics=diagnostics,
            timeout=timeout,
        )
        ranked = prioritize(merged, intent, config)
        return diversify(ranked, config.max_chunks, config.per_source_cap)

    def validate_answer(
        self,
        answer: str,
        required_keys: Iterable[str] = (),
        context: RetrievedContext | None = None,
    ) -> ValidationReport:
        """Check citations and required parameters of a generated answer."""
        available = context.citations_available if context is not None and context.grounded else None
        high_relevance = context.high_relevance_count if context is not None else 0
        return validate(
            answer,
            required_keys,
            available=available,
            high_relevance_count=high_relevance,
        )

    async def answer_with_repair(
        self,
        query: str,
        tenant_id: str | None,
        generate: Generate,
        conversation_history: Iterable[ConversationMessage] | None = None,
        required_keys: Iterable[str] = (),
    ) -> GroundedAnswer:
        """Generate, validate and regenerate at most once.

        The first answer is returned when the regeneration fails; validation
        gaps never block the response.
        """
        required_keys = list(required_keys)
        context = await self.retrieve_context(query, tenant_id, conversation_history)
        prompt = build_prompt(query, context)

        answer = await generate(prompt)
        report = self.validate_answer(answer, required_keys, context)
        if not report.needs_repair:
            return GroundedAnswer(answer=answer, report=report, context=context)

        repair_prompt = f"{prompt}\n\n{build_repair_instructions(report)}"
        try:
            repaired = await generate(repair_prompt)
        except Exception as e:
            logger.warning(f"Regeneration failed, keeping first answer: {e}")
            return GroundedAnswer(answer=answer, report=report, context=context)

        if not repaired.strip():
            logger.warning("Regeneration returned an empty answer, keeping first answer")
            return GroundedAnswer(answer=answer, report=report, context=context)

        repaired_report = self.validate_answer(repaired, required_keys, context)
        return GroundedAnswer(
            answer=repaired,
            report=repaired_report,
            context=context,
            regenerated=True,
        )

    def _ungrounded(
        self,
        diagnostics: RetrievalDiagnostics,
        intent: QueryIntent | None = None,
    ) -> RetrievedContext:
        return RetrievedContext(
            context_block=UNGROUNDED_NOTICE,
            grounded=False,
            intent=intent,
            diagnostics=diagnostics,
        )

    def _observe(
        self,
        diagnostics: RetrievalDiagnostics,
        success: bool,
        start: float,
        candidates: int,
    ) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        strategy = diagnostics.strategy_used or "none"
        if diagnostics.multi_query:
            strategy = f"{strategy}+multi_query"
        self.metrics.observe_retrieval(strategy, success, duration_ms, candidates)


def build_prompt(query: str, context: RetrievedContext) -> str:
    """Prompt text for the generator: sources (or the notice) then the question."""
    if not context.grounded:
        return f"{context.context_block}\n\nQuestion: {query}"
    return f"{CITATION_INSTRUCTIONS}\n\n{context.context_block}\n\nQuestion: {query}"


def initialize_retrieval_pipeline(
    settings: Settings | None = None,
    chunk_store: ChunkStore | None = None,
    config_store: ConfigStore | None = None,
    embedder: EmbeddingProvider | None = None,
) -> "RetrievalPipeline":
    """Initialize the global retrieval pipeline.

    Should be called during application startup. Missing collaborators are
    built from settings: SQL stores on the shared engine and the configured
    embedding provider.
    """
    global _pipeline_instance

    settings = settings or get_settings()
    if chunk_store is None or config_store is None:
        from coach_rag.core.database import get_session_factory
        from coach_rag.knowledge.config_store import SqlConfigStore
        from coach_rag.knowledge.store import SqlChunkStore

        session_factory = get_session_factory()
        chunk_store = chunk_store or SqlChunkStore(session_factory)
        config_store = config_store or SqlConfigStore(session_factory)
    if embedder is None:
        from coach_rag.knowledge.embeddings import build_embedding_provider

        embedder = build_embedding_provider(settings)

    _pipeline_instance = RetrievalPipeline(chunk_store, config_store, embedder, settings=settings)
    logger.info(f"Retrieval pipeline initialized with {settings.embedding_provider} embeddings")
    return _pipeline_instance


def get_retrieval_pipeline() -> RetrievalPipeline | None:
    """Get the global retrieval pipeline instance.

    Returns:
        The initialized pipeline, or None if not initialized.
    """
    return _pipeline_instance
