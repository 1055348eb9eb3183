"""Multi-query planning for complex requests.

Workout-programming questions need both exercise selection and numeric
programming detail (sets, reps, rest, volume). One embedding rarely captures
both, so such queries are split into the original text plus a fixed set of
generic secondary queries. Each sub-query contributes at most its budget; the merged
list is cut to the chunk budget downstream by the diversifier.
"""

import asyncio
import logging
import re
from typing import Iterable

from coach_rag.core.exceptions import EmbeddingUnavailable, RetrievalFailed
from coach_rag.knowledge.diversifier import diversify
from coach_rag.knowledge.embeddings import EmbeddingProvider, RetryPolicy, embed_with_policy
from coach_rag.knowledge.models import (
    ChunkFilter,
    ConversationMessage,
    QueryIntent,
    RetrievalCandidate,
    RetrievalConfiguration,
    RetrievalDiagnostics,
    SubQuery,
    SubQueryRole,
)
from coach_rag.knowledge.prioritizer import boost_relevance
from coach_rag.knowledge.retriever import CandidateRetriever, accept_candidates
from coach_rag.knowledge.strategies import DEFAULT_STRATEGIES, RetrievalStrategy, run_strategies
from coach_rag.observability import MetricsBackend, get_metrics_backend

logger = logging.getLogger(__name__)

MULTI_QUERY_KEYWORDS: tuple[str, ...] = (
    "workout", "training", "exercise", "program", "routine", "design", "create",
    "build", "structure", "plan", "complete", "effective", "optimal", "best",
    "rep", "reps", "set", "sets", "rest", "progression", "muscle", "chest",
    "back", "legs", "arms", "shoulders", "bicep", "tricep", "quad", "hamstring",
    "glute", "calves",
)
_MULTI_QUERY_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in MULTI_QUERY_KEYWORDS) + r")\b",
    re.IGNORECASE,
)

SECONDARY_QUERIES: tuple[str, ...] = (
    "sets reps repetitions hypertrophy",
    "rest periods between sets muscle growth",
    "training volume muscle building",
)

DEFAULT_PRIMARY_BUDGET_RATIO = 0.6
DEFAULT_SECONDARY_BUDGET = 2
DEFAULT_RELAXED_MARGIN = 0.1
DEFAULT_RELAXED_FLOOR = 0.25

HISTORY_WINDOW = 4
_FOLLOW_UP_PATTERN = re.compile(
    r"\b(it|they|that|this|these|those|how many|which|what about)\b",
    re.IGNORECASE,
)


def contextualize_query(
    query: str,
    history: Iterable[ConversationMessage] | None = None,
) -> str:
    """Make a follow-up question self-contained for embedding.

    Only queries with referential words are rewritten; the most recent prior
    user message within the last few history messages is prefixed.
    """
    if not history or not _FOLLOW_UP_PATTERN.search(query):
        return query
    recent = list(history)[-HISTORY_WINDOW:]
    for message in reversed(recent):
        if message.role == "user" and message.content.strip() and message.content.strip() != query.strip():
            return f"{message.content.strip()} {query}"
    return query


def merge_results(
    primary: list[RetrievalCandidate],
    secondaries: list[list[RetrievalCandidate]],
    reserve: list[RetrievalCandidate] | None = None,
) -> list[RetrievalCandidate]:
    """Merge sub-query results into one ranked list without truncating.

    The budgeted picks (primary selection and each secondary's accepted
    results) are deduplicated, primary first so it wins duplicates and equal
    score ties, and ordered by ``score``. ``reserve`` holds primary
    candidates beyond the primary budget and follows every budgeted pick, so
    it is only reached when the budgeted picks cannot fill the result. The
    final cut is left to ``diversify`` so the per-source cap applies to the
    whole merged set.
    """
    seen: set[tuple[str, int]] = set()

    def unseen(group: Iterable[RetrievalCandidate]) -> list[RetrievalCandidate]:
        fresh: list[RetrievalCandidate] = []
        for candidate in group:
            if candidate.key in seen:
                continue
            seen.add(candidate.key)
            fresh.append(candidate)
        return fresh

    budgeted = unseen(c for group in [primary, *secondaries] for c in group)
    backfill = unseen(reserve or [])
    return sorted(budgeted, key=lambda c: c.score, reverse=True) + sorted(
        backfill, key=lambda c: c.score, reverse=True
    )


class QueryPlanner:
    """Plans and executes single or multi-query retrieval."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        retriever: CandidateRetriever,
        primary_retry: RetryPolicy | None = None,
        secondary_retry: RetryPolicy | None = None,
        strategies: tuple[RetrievalStrategy, ...] = DEFAULT_STRATEGIES,
        primary_budget_ratio: float = DEFAULT_PRIMARY_BUDGET_RATIO,
        secondary_budget: int = DEFAULT_SECONDARY_BUDGET,
        relaxed_margin: float = DEFAULT_RELAXED_MARGIN,
        relaxed_floor: float = DEFAULT_RELAXED_FLOOR,
        secondary_queries: tuple[str, ...] = SECONDARY_QUERIES,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.embedder = embedder
        self.retriever = retriever
        self.primary_retry = primary_retry or RetryPolicy()
        self.secondary_retry = secondary_retry or RetryPolicy.no_retry()
        self.strategies = strategies
        self.primary_budget_ratio = primary_budget_ratio
        self.secondary_budget = secondary_budget
        self.relaxed_margin = relaxed_margin
        self.relaxed_floor = relaxed_floor
        self.secondary_queries = secondary_queries
        self.metrics = metrics or get_metrics_backend()

    @staticmethod
    def should_use_multi_query(query: str) -> bool:
        return bool(_MULTI_QUERY_PATTERN.search(query))

    def relaxed_threshold(self, config: RetrievalConfiguration) -> float:
        return max(self.relaxed_floor, config.similarity_threshold - self.relaxed_margin)

    def plan(
        self,
        query: str,
        config: RetrievalConfiguration,
        multi_query: bool | None = None,
    ) -> list[SubQuery]:
        """Decompose ``query`` into sub-queries.

        Args:
            query: User query (already contextualized).
            config: Configuration read at call start.
            multi_query: Force the mode; None decides from the query keywords.

        Returns:
            The primary sub-query first, then any secondary sub-queries.
        """
        if multi_query is None:
            multi_query = self.should_use_multi_query(query)

        if not multi_query:
            return [
                SubQuery(
                    text=query,
                    role=SubQueryRole.PRIMARY,
                    budget=config.max_chunks,
                    threshold=config.similarity_threshold,
                    retry=True,
                )
            ]

        primary_budget = max(1, int(config.max_chunks * self.primary_budget_ratio))
        relaxed = self.relaxed_threshold(config)
        sub_queries = [
            SubQuery(
                text=query,
                role=SubQueryRole.PRIMARY,
                budget=primary_budget,
                threshold=config.similarity_threshold,
                retry=True,
            )
        ]
        sub_queries.extend(
            SubQuery(
                text=text,
                role=SubQueryRole.SECONDARY,
                budget=self.secondary_budget,
                threshold=relaxed,
                retry=False,
            )
            for text in self.secondary_queries
        )
        logger.info(
            f"Multi-query plan: primary budget {primary_budget}, "
            f"{len(self.secondary_queries)} secondaries at threshold {relaxed:.2f}"
        )
        return sub_queries

    async def execute(
        self,
        sub_queries: list[SubQuery],
        chunk_filter: ChunkFilter,
        config: RetrievalConfiguration,
        intent: QueryIntent,
        diagnostics: RetrievalDiagnostics | None = None,
        timeout: float | None = None,
    ) -> list[RetrievalCandidate]:
        """Run the planned sub-queries and merge their results.

        Secondary sub-queries run concurrently with the primary. A failing one
        is logged and skipped. When ``timeout`` expires after the primary has
        completed, unfinished secondaries are cancelled and the partial merge is
        returned. Results get the muscle and concept relevance bonus before
        merging, and the merged list is returned untruncated.

        Raises:
            RetrievalFailed: If the primary sub-query fails or times out.
            RetrievalUnavailable: If the chunk store cannot be reached.
        """
        if diagnostics is None:
            diagnostics = RetrievalDiagnostics()
        primary = next((s for s in sub_queries if s.role == SubQueryRole.PRIMARY), None)
        if primary is None:
            raise ValueError("Sub-query plan has no primary query")
        secondaries = [s for s in sub_queries if s.role == SubQueryRole.SECONDARY]
        diagnostics.multi_query = bool(secondaries)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        tasks = [
            asyncio.create_task(self._run_secondary(sub, chunk_filter, config, diagnostics))
            for sub in secondaries
        ]
        try:
            primary_result, reserve = await asyncio.wait_for(
                self._run_primary(primary, chunk_filter, config, intent, diagnostics),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            await _cancel_all(tasks)
            raise RetrievalFailed(
                f"Primary query did not complete within {timeout}s", reason="timeout"
            ) from e
        except BaseException:
            await _cancel_all(tasks)
            raise

        secondary_results: list[list[RetrievalCandidate]] = []
        if tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                done, pending = await asyncio.wait(tasks, timeout=remaining)
            except BaseException:
                await _cancel_all(tasks)
                raise
            if pending:
                diagnostics.timed_out = True
                logger.warning(f"Deadline reached, dropping {len(pending)} unfinished secondaries")
                await _cancel_all(list(pending))

            for sub, task in zip(secondaries, tasks):
                if task not in done:
                    diagnostics.failed_sub_queries.append(sub.text)
                    continue
                error = task.exception()
                if error is not None:
                    logger.warning(f"Secondary sub-query '{sub.text}' failed: {error}")
                    diagnostics.failed_sub_queries.append(sub.text)
                    self.metrics.observe_sub_query_failure(SubQueryRole.SECONDARY.value)
                    continue
                secondary_results.append(task.result())

        merged = merge_results(
            boost_relevance(primary_result, intent),
            [boost_relevance(result, intent) for result in secondary_results],
            reserve=boost_relevance(reserve, intent),
        )
        logger.info(
            f"Merged {len(primary_result)} primary, "
            f"{sum(len(r) for r in secondary_results)} secondary and {len(reserve)} reserve "
            f"candidates into {len(merged)}"
        )
        return merged

    async def _run_primary(
        self,
        sub: SubQuery,
        chunk_filter: ChunkFilter,
        config: RetrievalConfiguration,
        intent: QueryIntent,
        diagnostics: RetrievalDiagnostics,
    ) -> tuple[list[RetrievalCandidate], list[RetrievalCandidate]]:
        policy = self.primary_retry if sub.retry else RetryPolicy.no_retry()
        try:
            vector = await embed_with_policy(self.embedder, sub.text, policy)
        except EmbeddingUnavailable as e:
            self.metrics.observe_sub_query_failure(SubQueryRole.PRIMARY.value)
            raise RetrievalFailed(
                f"Primary query embedding failed: {e}", reason="embedding"
            ) from e

        ranked = await run_strategies(
            self.retriever,
            vector,
            chunk_filter,
            intent,
            config,
            requested_count=config.max_chunks,
            threshold=sub.threshold,
            strategies=self.strategies,
            diagnostics=diagnostics,
            query_text=sub.text,
        )
        accepted = accept_candidates(ranked, sub.threshold)
        diagnostics.low_confidence += len(ranked) - len(accepted)

        selected = diversify(accepted, sub.budget, config.per_source_cap)
        chosen = {c.key for c in selected}
        reserve = [c for c in accepted if c.key not in chosen]
        return selected, reserve

    async def _run_secondary(
        self,
        sub: SubQuery,
        chunk_filter: ChunkFilter,
        config: RetrievalConfiguration,
        diagnostics: RetrievalDiagnostics,
    ) -> list[RetrievalCandidate]:
        policy = self.secondary_retry if not sub.retry else self.primary_retry
        vector = await embed_with_policy(self.embedder, sub.text, policy)
        pool = await self.retriever.retrieve(
            vector,
            chunk_filter,
            config,
            requested_count=sub.budget,
            diagnostics=diagnostics,
        )
        return accept_candidates(pool, sub.threshold, limit=sub.budget)


async def _cancel_all(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
