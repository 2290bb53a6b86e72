"""
Win-rate estimation - Wilson score intervals

Binomial proportion confidence intervals used to turn raw battle/win tallies
into victory ratios. Two estimators are provided:

- ``wilson_score``: the plain Wilson score interval, returning NaN for an
  empty sample so that callers can filter it out.
- ``wilson_score_with_cc``: Newcombe's continuity-corrected Wilson interval,
  used for every per-vehicle and per-account aggregate.

Intervals are compared with a three-way verdict (less, greater, unordered),
since overlapping intervals carry no ordering information.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


class EstimatorError(ValueError):
    """Raised when a sample cannot produce a confidence interval."""


class ConfidenceLevel(Enum):
    """Named confidence levels and their two-sided z-values."""
    Z80 = 1.28
    Z85 = 1.440
    Z87 = 1.51
    Z88 = 1.5548
    Z89 = 1.598
    Z90 = 1.645
    Z95 = 1.960
    Z96 = 2.054
    Z97 = 2.17009
    Z98 = 2.326
    Z99 = 2.576
    Z99_99 = 3.29053

    @property
    def z_value(self) -> float:
        return self.value

    @classmethod
    def default(cls) -> ConfidenceLevel:
        return cls.Z90

    @classmethod
    def from_z(cls, z: float) -> ConfidenceLevel:
        """Find the named level for a z-value, raising ValueError if unknown."""
        for level in cls:
            if math.isclose(level.value, z):
                return level
        raise ValueError(f"No confidence level for z={z}")


class IntervalOrdering(Enum):
    """Result of comparing two confidence intervals."""
    LESS = "less"
    GREATER = "greater"
    UNORDERED = "unordered"


@dataclass(frozen=True, eq=False)
class ConfidenceInterval:
    """A symmetric confidence interval around ``mean``."""
    mean: float
    margin: float

    @property
    def lower(self) -> float:
        return self.mean - self.margin

    @property
    def upper(self) -> float:
        return self.mean + self.margin

    def compare(self, other: ConfidenceInterval) -> IntervalOrdering:
        """
        Compare two intervals.

        Only non-overlapping intervals produce a verdict; anything that
        overlaps (or contains NaN) is unordered.

        Args:
            other: Interval to compare against

        Returns:
            LESS if this interval lies entirely below ``other``,
            GREATER if entirely above, UNORDERED otherwise
        """
        if self.upper < other.lower:
            return IntervalOrdering.LESS
        if self.lower > other.upper:
            return IntervalOrdering.GREATER
        return IntervalOrdering.UNORDERED

    @classmethod
    def from_bounds(cls, lower: float, upper: float) -> ConfidenceInterval:
        return cls(mean=(lower + upper) / 2.0, margin=(upper - lower) / 2.0)


def wilson_score(n_trials: int, n_successes: int, z: float) -> tuple[float, float]:
    """
    Plain Wilson score interval.

    Args:
        n_trials: Number of battles
        n_successes: Number of wins
        z: Two-sided z-value

    Returns:
        Tuple of (mean, margin); both NaN when ``n_trials`` is zero
    """
    if n_trials == 0:
        return math.nan, math.nan

    n = float(n_trials)
    p_hat = n_successes / n
    a = z * z / n
    b = 1.0 / (1.0 + a)
    mean = b * (p_hat + a / 2.0)
    margin = z * b * math.sqrt(p_hat * (1.0 - p_hat) / n + a / (4.0 * n))
    return mean, margin


def wilson_score_with_cc(n_trials: int, n_successes: int, z: float) -> ConfidenceInterval:
    """
    Wilson score interval with continuity correction (Newcombe, 1998).

    Bounds are clamped to [0, 1]. A sample with no wins has a lower bound of
    exactly 0, and a sample with no losses has an upper bound of exactly 1.

    Raises:
        EstimatorError: If the sample is empty or has more wins than battles
    """
    if n_trials == 0:
        raise EstimatorError("cannot estimate a win rate from zero battles")
    if n_successes > n_trials:
        raise EstimatorError(
            f"more wins than battles ({n_successes} > {n_trials})"
        )

    n = float(n_trials)
    p = n_successes / n
    z2 = z * z
    denominator = 2.0 * (n + z2)
    base = 2.0 * n * p + z2
    spread = z2 - 1.0 / n + 4.0 * n * p * (1.0 - p)

    if n_successes == 0:
        lower = 0.0
    else:
        radicand = spread + (4.0 * p - 2.0)
        if radicand < 0.0:
            raise EstimatorError(f"negative radicand for {n_successes}/{n_trials}")
        lower = max(0.0, (base - (z * math.sqrt(radicand) + 1.0)) / denominator)

    if n_successes == n_trials:
        upper = 1.0
    else:
        radicand = spread - (4.0 * p - 2.0)
        if radicand < 0.0:
            raise EstimatorError(f"negative radicand for {n_successes}/{n_trials}")
        upper = min(1.0, (base + (z * math.sqrt(radicand) + 1.0)) / denominator)

    return ConfidenceInterval.from_bounds(lower, upper)


def victory_ratio(n_battles: int, n_wins: int, z: float = ConfidenceLevel.Z90.value) -> float:
    """Continuity-corrected Wilson mean of a battle/win tally."""
    return wilson_score_with_cc(n_battles, n_wins, z).mean
