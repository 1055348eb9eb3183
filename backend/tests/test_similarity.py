"""Tests for cosine similarity and stored embedding parsing."""

import random

import pytest

from coach_rag.core.exceptions import MalformedEmbedding
from coach_rag.knowledge.similarity import cosine_similarity, parse_embedding


class TestCosineSimilarity:
    """Tests for the similarity primitive."""

    def test_identical_vectors_score_one(self):
        assert cosine_similarity([0.3, -1.2, 4.0], [0.3, -1.2, 4.0]) == pytest.approx(1.0)

    def test_opposite_vectors_score_minus_one(self):
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors_score_zero(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 5.0]) == pytest.approx(0.0)

    def test_scale_does_not_matter(self):
        assert cosine_similarity([1.0, 1.0], [10.0, 10.0]) == pytest.approx(1.0)

    def test_length_mismatch_returns_zero(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0]) == 0.0

    def test_zero_norm_returns_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0

    def test_empty_vectors_return_zero(self):
        assert cosine_similarity([], []) == 0.0

    def test_random_vectors_stay_in_bounds(self):
        rng = random.Random(42)
        for _ in range(200):
            dim = rng.randint(1, 32)
            a = [rng.uniform(-5, 5) for _ in range(dim)]
            b = [rng.uniform(-5, 5) for _ in range(dim)]
            score = cosine_similarity(a, b)
            assert -1.0 <= score <= 1.0
            if any(a):
                assert cosine_similarity(a, a) == pytest.approx(1.0)

    def test_deterministic(self):
        a = [0.12345, 0.6789, -0.3333]
        b = [0.9876, -0.5432, 0.1111]
        assert cosine_similarity(a, b) == cosine_similarity(a, b)


class TestParseEmbedding:
    """Tests for stored vector parsing."""

    def test_parses_json_text(self):
        assert parse_embedding("[0.1, 0.2, 3]") == [0.1, 0.2, 3.0]

    def test_accepts_decoded_list(self):
        assert parse_embedding([1, 2.5]) == [1.0, 2.5]

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "{\"a\": 1}",
            "[]",
            "[0.1, \"x\"]",
            "[0.1, NaN]",
            "[true, 0.2]",
            None,
        ],
    )
    def test_rejects_malformed(self, raw):
        with pytest.raises(MalformedEmbedding):
            parse_embedding(raw)

    def test_malformed_embedding_is_value_error(self):
        with pytest.raises(ValueError):
            parse_embedding("[1, null]")
