"""
Vehicle similarity engine

Builds the account x vehicle residual-rating matrix and computes pairwise
vehicle cosine similarity over it.

A residual is an account's victory ratio on a vehicle minus the vehicle's
population-wide victory ratio. The matrix is stored column-major
(``scipy.sparse.csc_matrix``) so that a vehicle's ratings are one contiguous
slice of row indices and values. Each column's row indices are sorted, which
lets the dot product of two columns run as a merge join over the accounts
they share.

The pairwise pass is O(n^2) in the number of vehicles. It is split into one
job per vehicle, run in worker threads and gated by a semaphore so that only
a bounded number of jobs are in flight. The matrix is never mutated after it
is built and is shared by all jobs.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Mapping

import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)

Adjacency = dict[int, dict[int, float]]


# =============================================================================
# Ratings Matrix
# =============================================================================

class RatingsMatrix:
    """Sparse residual ratings, one row per account and one column per vehicle."""

    def __init__(
        self,
        matrix: sparse.csc_matrix,
        tank_ids: list[int],
        account_ids: list[int],
    ):
        self.matrix = matrix
        self.matrix.sort_indices()
        self.tank_ids = tank_ids
        self.account_ids = account_ids
        self._columns = {tank_id: j for j, tank_id in enumerate(tank_ids)}
        self._rows = {account_id: i for i, account_id in enumerate(account_ids)}
        self._norms = np.sqrt(np.asarray(matrix.multiply(matrix).sum(axis=0)).ravel())

    @classmethod
    def build(
        cls,
        vehicle_ratios: Mapping[int, float],
        account_vehicle_ratios: Mapping[tuple[int, int], float],
    ) -> RatingsMatrix:
        """
        Build the matrix from aggregated victory ratios.

        Args:
            vehicle_ratios: Baseline victory ratio per tank
            account_vehicle_ratios: Observed victory ratio per (tank, account)

        Returns:
            Matrix of residuals; pairs without a baseline are skipped
        """
        tank_ids = sorted(vehicle_ratios)
        columns = {tank_id: j for j, tank_id in enumerate(tank_ids)}

        entries = [
            (tank_id, account_id, ratio - vehicle_ratios[tank_id])
            for (tank_id, account_id), ratio in account_vehicle_ratios.items()
            if tank_id in columns
        ]
        account_ids = sorted({account_id for _, account_id, _ in entries})
        rows_by_account = {account_id: i for i, account_id in enumerate(account_ids)}

        rows = np.fromiter(
            (rows_by_account[account_id] for _, account_id, _ in entries),
            dtype=np.int64,
            count=len(entries),
        )
        cols = np.fromiter(
            (columns[tank_id] for tank_id, _, _ in entries),
            dtype=np.int64,
            count=len(entries),
        )
        data = np.fromiter(
            (residual for _, _, residual in entries),
            dtype=np.float64,
            count=len(entries),
        )

        matrix = sparse.coo_matrix(
            (data, (rows, cols)),
            shape=(len(account_ids), len(tank_ids)),
        ).tocsc()
        logger.debug(
            f"Ratings matrix: {len(account_ids)} accounts x {len(tank_ids)} vehicles, "
            f"{matrix.nnz} ratings"
        )
        return cls(matrix, tank_ids, account_ids)

    @property
    def shape(self) -> tuple[int, int]:
        return self.matrix.shape

    @property
    def nnz(self) -> int:
        return self.matrix.nnz

    def __contains__(self, tank_id: int) -> bool:
        return tank_id in self._columns

    def column(self, tank_id: int) -> tuple[np.ndarray, np.ndarray]:
        """Return the sorted row indices and residuals of a vehicle's column."""
        j = self._columns[tank_id]
        start, end = self.matrix.indptr[j], self.matrix.indptr[j + 1]
        return self.matrix.indices[start:end], self.matrix.data[start:end]

    def norm(self, tank_id: int) -> float:
        """Euclidean norm over the full column."""
        return float(self._norms[self._columns[tank_id]])

    def rating(self, account_id: int, tank_id: int) -> float:
        rows, values = self.column(tank_id)
        row = self._rows.get(account_id)
        if row is None:
            return 0.0
        position = np.searchsorted(rows, row)
        if position < len(rows) and rows[position] == row:
            return float(values[position])
        return 0.0


# =============================================================================
# Similarity
# =============================================================================

def sparse_dot(
    rows_a: np.ndarray,
    values_a: np.ndarray,
    rows_b: np.ndarray,
    values_b: np.ndarray,
) -> float:
    """Dot product of two sparse vectors over their shared rows."""
    _, index_a, index_b = np.intersect1d(
        rows_a, rows_b, assume_unique=True, return_indices=True
    )
    return float(np.dot(values_a[index_a], values_b[index_b]))


def cosine_similarity(matrix: RatingsMatrix, tank_a: int, tank_b: int) -> float:
    """
    Cosine similarity of two vehicle columns.

    The result is NaN or infinite when either column has a zero norm; callers
    are expected to drop such values.
    """
    dot = sparse_dot(*matrix.column(tank_a), *matrix.column(tank_b))
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.float64(dot) / (np.float64(matrix.norm(tank_a)) * matrix.norm(tank_b)))


class SimilarityEngine:
    """Computes the symmetric vehicle similarity graph with bounded concurrency."""

    def __init__(self, concurrency: int = 4):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.concurrency = concurrency

    @staticmethod
    def similarities_for(
        matrix: RatingsMatrix,
        tank_id: int,
        others: list[int],
    ) -> list[tuple[int, float]]:
        """Similarities of one vehicle against ``others``, non-finite ones dropped."""
        result = []
        for other_id in others:
            similarity = cosine_similarity(matrix, tank_id, other_id)
            if math.isfinite(similarity):
                result.append((other_id, similarity))
        return result

    async def compute(self, matrix: RatingsMatrix) -> Adjacency:
        """
        Compute every pairwise similarity.

        Each unordered pair is evaluated once, with the lower tank id as the
        second vehicle, and stored in both adjacency lists.

        Args:
            matrix: Ratings matrix, read-only for the duration of the call

        Returns:
            Mapping of tank id to its neighbours and their similarities
        """
        tank_ids = sorted(matrix.tank_ids)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def job(i: int) -> list[tuple[int, float]]:
            async with semaphore:
                return await asyncio.to_thread(
                    self.similarities_for, matrix, tank_ids[i], tank_ids[:i]
                )

        results = await asyncio.gather(*(job(i) for i in range(1, len(tank_ids))))

        adjacency: Adjacency = {tank_id: {} for tank_id in tank_ids}
        n_pairs = 0
        for tank_id, pairs in zip(tank_ids[1:], results):
            for other_id, similarity in pairs:
                adjacency[tank_id][other_id] = similarity
                adjacency[other_id][tank_id] = similarity
                n_pairs += 1

        logger.info(f"Computed {n_pairs} similarities over {len(tank_ids)} vehicles")
        return adjacency
