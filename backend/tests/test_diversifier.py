"""Tests for per-source diversification."""

from collections import Counter

from coach_rag.knowledge.diversifier import diversify


def _ranked(candidates):
    return sorted(candidates, key=lambda c: c.similarity, reverse=True)


class TestDiversify:
    """Tests for diversify."""

    def test_long_document_does_not_dominate(self, make_candidate):
        dominant = [make_candidate("long-guide", i, 0.95 - i * 0.003) for i in range(15)]
        others = [
            make_candidate("doc-a", 0, 0.80),
            make_candidate("doc-b", 0, 0.78),
            make_candidate("doc-c", 0, 0.75),
            make_candidate("doc-d", 0, 0.72),
            make_candidate("doc-d", 1, 0.70),
        ]

        result = diversify(_ranked(dominant + others), target_count=6, per_source_cap=2)

        assert len(result) == 6
        counts = Counter(c.parent_item_id for c in result)
        assert counts["long-guide"] == 2
        assert set(counts) == {"long-guide", "doc-a", "doc-b", "doc-c", "doc-d"}

    def test_backfills_when_sources_are_scarce(self, make_candidate):
        candidates = [make_candidate("only", i, 0.9 - i * 0.01) for i in range(6)]

        result = diversify(candidates, target_count=4, per_source_cap=2)

        assert len(result) == 4
        assert [c.chunk_index for c in result] == [0, 1, 2, 3]

    def test_cap_holds_when_enough_sources(self, make_candidate):
        candidates = _ranked(
            [make_candidate(f"doc{d}", i, 0.5 + d * 0.05 + i * 0.001) for d in range(5) for i in range(4)]
        )

        result = diversify(candidates, target_count=6, per_source_cap=2)

        assert len(result) == 6
        assert max(Counter(c.parent_item_id for c in result).values()) <= 2

    def test_preserves_input_order(self, make_candidate):
        # category-first order must survive even when scores disagree
        candidates = [
            make_candidate("in-category", 0, 0.6),
            make_candidate("off-category", 0, 0.9),
            make_candidate("in-category", 1, 0.55),
        ]

        result = diversify(candidates, target_count=3, per_source_cap=2)

        assert [c.key for c in result] == [("in-category", 0), ("off-category", 0), ("in-category", 1)]

    def test_never_duplicates_fragments(self, make_candidate):
        candidates = [
            make_candidate("a", 0, 0.9),
            make_candidate("a", 0, 0.9),
            make_candidate("b", 0, 0.8),
        ]

        result = diversify(candidates, target_count=5, per_source_cap=2)

        assert [c.key for c in result] == [("a", 0), ("b", 0)]

    def test_empty_and_zero_target(self, make_candidate):
        assert diversify([], target_count=5) == []
        assert diversify([make_candidate("a", 0, 0.9)], target_count=0) == []
