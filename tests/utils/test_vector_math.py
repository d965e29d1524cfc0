"""
Tests for vector math helpers.

Tests cover:
1. Cosine similarity edge cases
2. Batch cosine scoring
3. Weighted averaging
4. MMR selection
"""

import pytest

from story_recall.utils.vector_math import (
    cosine_scores,
    cosine_similarity,
    mmr_select,
    weighted_average_vectors,
)


@pytest.mark.unit
class TestCosineSimilarity:
    """Tests for cosine similarity."""

    def test_identical(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_bounded(self):
        sim = cosine_similarity([0.3, 0.7, 0.1], [0.2, 0.9, 0.4])
        assert -1.0 <= sim <= 1.0

    @pytest.mark.parametrize(
        "a,b",
        [
            ([], [1.0]),
            (None, [1.0]),
            ([1.0, 2.0], [1.0]),
            ([0.0, 0.0], [1.0, 1.0]),
        ],
    )
    def test_degenerate_inputs_score_zero(self, a, b):
        """Test empty, mismatched and zero-norm vectors score 0."""
        assert cosine_similarity(a, b) == 0.0


@pytest.mark.unit
class TestCosineScores:
    """Tests for batch scoring."""

    def test_matches_pairwise(self):
        query = [1.0, 0.5, 0.0]
        vectors = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 0.5, 0.0]]
        scores = cosine_scores(query, vectors)
        assert scores == pytest.approx([cosine_similarity(query, v) for v in vectors])

    def test_mismatched_rows_score_zero(self):
        scores = cosine_scores([1.0, 0.0], [[1.0, 0.0], [1.0], []])
        assert scores[0] == pytest.approx(1.0)
        assert scores[1:] == [0.0, 0.0]

    def test_empty(self):
        assert cosine_scores([1.0], []) == []
        assert cosine_scores([], [[1.0]]) == [0.0]


@pytest.mark.unit
class TestWeightedAverage:
    """Tests for weighted vector averaging."""

    def test_weighted_sum(self):
        result = weighted_average_vectors([[1.0, 0.0], [0.0, 1.0]], [0.75, 0.25])
        assert result == pytest.approx([0.75, 0.25])

    def test_empty_entries_skipped(self):
        result = weighted_average_vectors([[1.0, 1.0], []], [0.5, 0.5])
        assert result == pytest.approx([0.5, 0.5])

    def test_count_mismatch(self):
        assert weighted_average_vectors([[1.0]], [0.5, 0.5]) is None

    def test_all_empty(self):
        assert weighted_average_vectors([[], []], [0.5, 0.5]) == []


@pytest.mark.unit
class TestMmrSelect:
    """Tests for maximal marginal relevance."""

    def test_prefers_diverse_item(self):
        """Test a near-duplicate loses to a slightly less relevant distinct item."""
        items = [
            ("a", [1.0, 0.0], 0.90),
            ("a-dup", [1.0, 0.01], 0.89),
            ("b", [0.0, 1.0], 0.80),
        ]
        selected = mmr_select(items, 2, 0.5, lambda x: x[1], lambda x: x[2])
        assert [x[0] for x in selected] == ["a", "b"]

    def test_lambda_one_is_relevance_order(self):
        items = [("a", [1.0, 0.0], 0.5), ("b", [1.0, 0.0], 0.9), ("c", [1.0, 0.0], 0.7)]
        selected = mmr_select(items, 3, 1.0, lambda x: x[1], lambda x: x[2])
        assert [x[0] for x in selected] == ["b", "c", "a"]

    def test_k_caps_selection(self):
        items = [("a", [1.0], 0.5), ("b", [1.0], 0.4)]
        assert len(mmr_select(items, 1, 0.7, lambda x: x[1], lambda x: x[2])) == 1

    def test_empty(self):
        assert mmr_select([], 5, 0.7, lambda x: x, lambda x: 0.0) == []
