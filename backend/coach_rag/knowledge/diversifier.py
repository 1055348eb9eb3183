"""Keeps a single long document from flooding the result set."""

import logging
from collections import defaultdict

from coach_rag.knowledge.models import RetrievalCandidate

logger = logging.getLogger(__name__)

DEFAULT_PER_SOURCE_CAP = 2


def diversify(
    candidates: list[RetrievalCandidate],
    target_count: int,
    per_source_cap: int = DEFAULT_PER_SOURCE_CAP,
) -> list[RetrievalCandidate]:
    """Select up to ``target_count`` candidates with a per-document cap.

    Candidates are walked in the given rank order (descending similarity
    for retriever output, category-first after prioritization). The first
    pass takes at most ``per_source_cap`` chunks per parent item. If that
    leaves the result short, a second pass backfills with the best remaining
    candidates regardless of source. Duplicate fragments (same parent and
    chunk index) are never emitted.

    Args:
        candidates: Ranked candidates.
        target_count: Maximum number of results.
        per_source_cap: Chunks allowed per parent item in the first pass.

    Returns:
        At most ``target_count`` candidates, in their input rank order.
    """
    if target_count <= 0 or not candidates:
        return []
    per_source_cap = max(1, per_source_cap)

    chosen: set[tuple[str, int]] = set()
    per_source: dict[str, int] = defaultdict(int)

    for candidate in candidates:
        if len(chosen) >= target_count:
            break
        if candidate.key in chosen:
            continue
        if per_source[candidate.parent_item_id] >= per_source_cap:
            continue
        chosen.add(candidate.key)
        per_source[candidate.parent_item_id] += 1

    first_pass = len(chosen)

    for candidate in candidates:
        if len(chosen) >= target_count:
            break
        chosen.add(candidate.key)

    if len(chosen) > first_pass:
        logger.debug(
            f"Diversifier backfilled {len(chosen) - first_pass} candidates "
            f"beyond the per-source cap of {per_source_cap}"
        )

    selected: list[RetrievalCandidate] = []
    emitted: set[tuple[str, int]] = set()
    for candidate in candidates:
        if candidate.key in chosen and candidate.key not in emitted:
            selected.append(candidate)
            emitted.add(candidate.key)
    return selected
