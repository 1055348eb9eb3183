"""Candidate ordering: category priority and the muscle and concept relevance bonus."""

import logging
import re
from typing import Iterable

from coach_rag.knowledge.intent import mentions_concept
from coach_rag.knowledge.models import QueryIntent, RetrievalCandidate, RetrievalConfiguration

logger = logging.getLogger(__name__)

MUSCLE_MENTION_BOOST = 0.15
CONCEPT_MENTION_BOOST = 0.1


def merge_unique(*groups: Iterable[RetrievalCandidate]) -> list[RetrievalCandidate]:
    """Concatenate candidate groups, keeping the first occurrence of each fragment."""
    merged: list[RetrievalCandidate] = []
    seen: set[tuple[str, int]] = set()
    for group in groups:
        for candidate in group:
            if candidate.key in seen:
                continue
            seen.add(candidate.key)
            merged.append(candidate)
    return merged


def matches_categories(candidate: RetrievalCandidate, categories: Iterable[str]) -> bool:
    return not set(categories).isdisjoint(candidate.categories)


def prioritize(
    candidates: list[RetrievalCandidate],
    intent: QueryIntent,
    config: RetrievalConfiguration,
    supplement: Iterable[RetrievalCandidate] = (),
) -> list[RetrievalCandidate]:
    """Stable partition with category matches first.

    ``candidates`` come from the priority-category search and ``supplement``
    from the broader full-corpus search the caller ran because the priority
    set was too small. Both are merged without duplicates, then every
    candidate in one of the intent's categories is moved ahead of the rest.
    Relative order inside each part is unchanged.

    Passthrough (merge only) when category priority is disabled or no
    candidate carries category metadata.
    """
    pool = merge_unique(candidates, supplement)
    if not config.category_priority:
        return pool
    if not any(candidate.categories for candidate in pool):
        logger.debug("No category metadata on candidates, prioritization skipped")
        return pool

    matched = [c for c in pool if matches_categories(c, intent.categories)]
    others = [c for c in pool if not matches_categories(c, intent.categories)]
    logger.debug(
        f"Prioritized {len(matched)} of {len(pool)} candidates for categories {list(intent.categories)}"
    )
    return matched + others


def boost_relevance(
    candidates: Iterable[RetrievalCandidate],
    intent: QueryIntent,
) -> list[RetrievalCandidate]:
    """Attach a relevance bonus for chunks that name what the query asks about.

    Each query muscle found as a whole word in the chunk's title or content
    adds ``MUSCLE_MENTION_BOOST``; each training concept of the query found in
    the content adds ``CONCEPT_MENTION_BOOST``. Similarity is left untouched,
    the bonus only affects ordering through ``RetrievalCandidate.score``.
    Input order is preserved.
    """
    boosted: list[RetrievalCandidate] = []
    for candidate in candidates:
        text = f"{candidate.title}\n{candidate.content}"
        bonus = MUSCLE_MENTION_BOOST * sum(
            1 for muscle in intent.muscles if re.search(rf"\b{re.escape(muscle)}\b", text, re.IGNORECASE)
        )
        bonus += CONCEPT_MENTION_BOOST * sum(
            1 for concept in intent.concepts if mentions_concept(candidate.content, concept)
        )
        boosted.append(candidate.model_copy(update={"relevance_boost": round(bonus, 4)}))
    return boosted
