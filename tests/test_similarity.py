"""
Similarity Engine Tests

Tests for the residual ratings matrix and pairwise cosine similarity.
"""

import math

import numpy as np
import pytest


@pytest.fixture
def matrix():
    """
    Residuals of three accounts on four vehicles.

    Vehicle 4 has only zero residuals, so its norm is zero.
    """
    from ml.similarity import RatingsMatrix

    vehicle_ratios = {1: 0.5, 2: 0.5, 3: 0.4, 4: 0.5}
    account_vehicle_ratios = {
        (1, 10): 0.6,
        (1, 11): 0.4,
        (2, 10): 0.7,
        (3, 11): 0.5,
        (3, 12): 0.3,
        (4, 12): 0.5,
        (9, 10): 0.9,  # no baseline
    }
    return RatingsMatrix.build(vehicle_ratios, account_vehicle_ratios)


class TestRatingsMatrix:
    """Tests for RatingsMatrix."""

    def test_shape(self, matrix):
        """Test one row per rated account and one column per baseline."""
        assert matrix.shape == (3, 4)
        assert matrix.tank_ids == [1, 2, 3, 4]
        assert matrix.account_ids == [10, 11, 12]
        assert 9 not in matrix

    def test_residuals(self, matrix):
        """Test that ratings are centered on the vehicle baseline."""
        assert matrix.rating(10, 1) == pytest.approx(0.1)
        assert matrix.rating(11, 1) == pytest.approx(-0.1)
        assert matrix.rating(10, 2) == pytest.approx(0.2)
        assert matrix.rating(12, 3) == pytest.approx(-0.1)
        assert matrix.rating(12, 2) == 0.0
        assert matrix.rating(99, 1) == 0.0

    def test_columns_are_sorted(self, matrix):
        """Test that each column's rows are sorted for the merge join."""
        for tank_id in matrix.tank_ids:
            rows, _ = matrix.column(tank_id)
            assert list(rows) == sorted(rows)

    def test_norm_over_full_column(self, matrix):
        """Test the norm covers every rating of the column."""
        assert matrix.norm(1) == pytest.approx(math.sqrt(0.02))
        assert matrix.norm(4) == 0.0

    def test_empty(self):
        """Test building from no ratings."""
        from ml.similarity import RatingsMatrix

        empty = RatingsMatrix.build({}, {})
        assert empty.nnz == 0
        assert empty.tank_ids == []


class TestSparseDot:
    """Tests for the merge-join dot product."""

    def test_shared_rows_only(self):
        """Test that only rows present in both vectors contribute."""
        from ml.similarity import sparse_dot

        result = sparse_dot(
            np.array([0, 2, 5]), np.array([1.0, 2.0, 3.0]),
            np.array([2, 3, 5]), np.array([4.0, 5.0, 6.0]),
        )
        assert result == pytest.approx(26.0)

    def test_disjoint(self):
        """Test that disjoint vectors have a zero dot product."""
        from ml.similarity import sparse_dot

        assert sparse_dot(np.array([0]), np.array([1.0]), np.array([1]), np.array([1.0])) == 0.0


class TestCosineSimilarity:
    """Tests for pairwise cosine similarity."""

    def test_uses_full_norms(self, matrix):
        """Test that the norms are not restricted to shared accounts."""
        from ml.similarity import cosine_similarity

        # dot = 0.1 * 0.2, norms sqrt(0.02) and 0.2
        assert cosine_similarity(matrix, 1, 2) == pytest.approx(1.0 / math.sqrt(2.0))

    def test_symmetric(self, matrix):
        """Test that argument order does not matter."""
        from ml.similarity import cosine_similarity

        assert cosine_similarity(matrix, 1, 3) == cosine_similarity(matrix, 3, 1)

    def test_zero_norm_is_not_finite(self, matrix):
        """Test that a zero column yields a non-finite similarity."""
        from ml.similarity import cosine_similarity

        assert not math.isfinite(cosine_similarity(matrix, 1, 4))


class TestSimilarityEngine:
    """Tests for the concurrent similarity pass."""

    @pytest.mark.asyncio
    async def test_symmetric_adjacency(self, matrix):
        """Test that every similarity is stored in both lists, unchanged."""
        from ml.similarity import SimilarityEngine

        adjacency = await SimilarityEngine(concurrency=2).compute(matrix)

        for tank_id, neighbours in adjacency.items():
            assert tank_id not in neighbours
            for other_id, similarity in neighbours.items():
                assert adjacency[other_id][tank_id] == similarity

    @pytest.mark.asyncio
    async def test_non_finite_dropped(self, matrix):
        """Test that the zero-norm vehicle has no neighbours."""
        from ml.similarity import SimilarityEngine

        adjacency = await SimilarityEngine().compute(matrix)

        assert adjacency[4] == {}
        assert all(4 not in neighbours for neighbours in adjacency.values())
        assert all(
            math.isfinite(similarity)
            for neighbours in adjacency.values()
            for similarity in neighbours.values()
        )

    @pytest.mark.asyncio
    async def test_concurrency_does_not_change_result(self, matrix):
        """Test that the concurrency limit only affects scheduling."""
        from ml.similarity import SimilarityEngine

        serial = await SimilarityEngine(concurrency=1).compute(matrix)
        parallel = await SimilarityEngine(concurrency=8).compute(matrix)
        assert serial == parallel

    @pytest.mark.asyncio
    async def test_matches_dense_computation(self):
        """Test against a dense cosine similarity on random residuals."""
        from ml.similarity import RatingsMatrix, SimilarityEngine

        rng = np.random.default_rng(42)
        vehicle_ratios = {tank_id: 0.5 for tank_id in range(1, 7)}
        account_vehicle_ratios = {
            (tank_id, account_id): float(rng.uniform(0.2, 0.8))
            for tank_id in vehicle_ratios
            for account_id in range(20)
            if rng.random() < 0.6
        }
        matrix = RatingsMatrix.build(vehicle_ratios, account_vehicle_ratios)
        dense = matrix.matrix.toarray()

        adjacency = await SimilarityEngine(concurrency=3).compute(matrix)

        for i, tank_a in enumerate(matrix.tank_ids):
            for j, tank_b in enumerate(matrix.tank_ids):
                if i == j:
                    continue
                a, b = dense[:, i], dense[:, j]
                expected = a @ b / (np.linalg.norm(a) * np.linalg.norm(b))
                assert adjacency[tank_a][tank_b] == pytest.approx(expected)

    def test_invalid_concurrency(self):
        """Test that a non-positive concurrency limit is rejected."""
        from ml.similarity import SimilarityEngine

        with pytest.raises(ValueError):
            SimilarityEngine(concurrency=0)
