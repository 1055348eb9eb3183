"""Ordered retrieval strategies tried in sequence with early exit.

Each strategy narrows the chunk filter in its own way and declares how many
accepted candidates make its result sufficient. The chain stops at the first
sufficient strategy. ``full_corpus`` searches every eligible vector and is
followed only by ``keyword_fallback``, a term search over chunk content that
runs when fewer than ``MIN_ACCEPTABLE_RESULTS`` candidates were accepted.
``keyword_fallback`` is always last and always terminal.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from coach_rag.knowledge.intent import MYTHS_CATEGORY
from coach_rag.knowledge.models import (
    ChunkFilter,
    QueryIntent,
    RetrievalCandidate,
    RetrievalConfiguration,
    RetrievalDiagnostics,
)
from coach_rag.knowledge.prioritizer import merge_unique, prioritize
from coach_rag.knowledge.retriever import CandidateRetriever, accept_candidates

logger = logging.getLogger(__name__)

# Below this many accepted candidates the term search is tried
MIN_ACCEPTABLE_RESULTS = 3

FilterBuilder = Callable[[ChunkFilter, QueryIntent, RetrievalConfiguration], ChunkFilter | None]
SufficiencyRule = Callable[[RetrievalConfiguration, int], int]


@dataclass(frozen=True)
class RetrievalStrategy:
    """A named retrieval attempt.

    ``build_filter`` returns None when the strategy does not apply to the
    query. ``required`` gives the number of accepted candidates needed to
    stop the chain. Keyword strategies search by query text instead of by
    vector.
    """

    name: str
    build_filter: FilterBuilder
    required: SufficiencyRule
    keyword: bool = False


def _muscle_filter(
    base: ChunkFilter,
    intent: QueryIntent,
    config: RetrievalConfiguration,
) -> ChunkFilter | None:
    if not config.strict_muscle_priority or not intent.muscle_categories:
        return None
    return base.with_categories(intent.muscle_categories)


def _muscle_required(config: RetrievalConfiguration, requested_count: int) -> int:
    return min(requested_count, max(3, int(config.max_chunks * 0.5)))


def _category_filter(
    base: ChunkFilter,
    intent: QueryIntent,
    config: RetrievalConfiguration,
) -> ChunkFilter | None:
    if not config.category_priority:
        return None
    if not [c for c in intent.categories if c != MYTHS_CATEGORY]:
        return None
    return base.with_categories(intent.categories)


def _full_corpus_filter(
    base: ChunkFilter,
    intent: QueryIntent,
    config: RetrievalConfiguration,
) -> ChunkFilter | None:
    return base


MUSCLE_PRIORITY = RetrievalStrategy(
    name="muscle_priority",
    build_filter=_muscle_filter,
    required=_muscle_required,
)
PRIORITY_CATEGORIES = RetrievalStrategy(
    name="priority_categories",
    build_filter=_category_filter,
    required=lambda config, requested_count: requested_count,
)
FULL_CORPUS = RetrievalStrategy(
    name="full_corpus",
    build_filter=_full_corpus_filter,
    required=lambda config, requested_count: min(requested_count, MIN_ACCEPTABLE_RESULTS),
)
KEYWORD_FALLBACK = RetrievalStrategy(
    name="keyword_fallback",
    build_filter=_full_corpus_filter,
    required=lambda config, requested_count: 0,
    keyword=True,
)

DEFAULT_STRATEGIES: tuple[RetrievalStrategy, ...] = (
    MUSCLE_PRIORITY,
    PRIORITY_CATEGORIES,
    FULL_CORPUS,
    KEYWORD_FALLBACK,
)


async def run_strategies(
    retriever: CandidateRetriever,
    query_vector: list[float],
    base_filter: ChunkFilter,
    intent: QueryIntent,
    config: RetrievalConfiguration,
    requested_count: int,
    threshold: float,
    strategies: tuple[RetrievalStrategy, ...] = DEFAULT_STRATEGIES,
    diagnostics: RetrievalDiagnostics | None = None,
    query_text: str | None = None,
) -> list[RetrievalCandidate]:
    """Run strategies in order until one yields enough accepted candidates.

    Results of every strategy that ran are kept: the first strategy's pool
    ranks first and later pools supplement it through ``prioritize``.
    Keyword strategies are skipped when no ``query_text`` is given.

    Raises:
        RetrievalUnavailable: If the chunk store cannot be reached.
    """
    pools: list[list[RetrievalCandidate]] = []
    used: str | None = None

    for strategy in strategies:
        chunk_filter = strategy.build_filter(base_filter, intent, config)
        if chunk_filter is None or (strategy.keyword and not query_text):
            continue
        if diagnostics is not None:
            diagnostics.strategies_tried.append(strategy.name)

        if strategy.keyword:
            pool = await retriever.retrieve_keywords(
                query_text,
                chunk_filter,
                config,
                requested_count=requested_count,
                diagnostics=diagnostics,
            )
            # a term hit replaces the rejected vector score of the same chunk
            kept = {c.key for c in accept_candidates(merge_unique(*pools), threshold)}
            pool = [c for c in pool if c.key not in kept]
            found = {c.key for c in pool}
            pools = [[c for c in p if c.key not in found] for p in pools]
        else:
            pool = await retriever.retrieve(
                query_vector,
                chunk_filter,
                config,
                requested_count=requested_count,
                diagnostics=diagnostics,
            )
        pools.append(pool)

        accepted = len(accept_candidates(merge_unique(*pools), threshold))
        needed = strategy.required(config, requested_count)
        logger.debug(
            f"Strategy {strategy.name}: {len(pool)} candidates, "
            f"{accepted} accepted so far, {needed} needed"
        )
        used = strategy.name
        if accepted >= needed:
            break

    if diagnostics is not None:
        diagnostics.strategy_used = used

    if not pools:
        return []
    return prioritize(pools[0], intent, config, supplement=merge_unique(*pools[1:]))
