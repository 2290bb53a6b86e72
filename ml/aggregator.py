"""
Battle tally aggregation

Reduces a window of train items into per-vehicle and per-(vehicle, account)
samples and converts them into victory ratios.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Hashable, Iterable, Mapping, TypeVar

from ml.statistics import ConfidenceInterval, ConfidenceLevel, wilson_score_with_cc
from ml.window import TrainItem

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)

DEFAULT_Z = ConfidenceLevel.Z90.value


@dataclass
class Sample:
    """Battle and win counters, closed under addition."""
    n_battles: int = 0
    n_wins: int = 0

    def __add__(self, other: Sample) -> Sample:
        return Sample(self.n_battles + other.n_battles, self.n_wins + other.n_wins)

    def __iadd__(self, other: Sample) -> Sample:
        self.n_battles += other.n_battles
        self.n_wins += other.n_wins
        return self

    @classmethod
    def from_item(cls, item: TrainItem) -> Sample:
        return cls(item.n_battles, item.n_wins)

    def confidence_interval(self, z: float = DEFAULT_Z) -> ConfidenceInterval:
        return wilson_score_with_cc(self.n_battles, self.n_wins, z)

    def victory_ratio(self, z: float = DEFAULT_Z) -> float:
        return self.confidence_interval(z).mean


def aggregate_by_vehicle(items: Iterable[TrainItem]) -> dict[int, Sample]:
    """Sum battles and wins per tank across all accounts."""
    samples: dict[int, Sample] = {}
    for item in items:
        if item.n_battles == 0:
            continue
        sample = samples.setdefault(item.tank_id, Sample())
        sample += Sample.from_item(item)
    return samples


def aggregate_by_account_vehicle(items: Iterable[TrainItem]) -> dict[tuple[int, int], Sample]:
    """Sum battles and wins per ``(tank_id, account_id)``."""
    samples: dict[tuple[int, int], Sample] = {}
    for item in items:
        if item.n_battles == 0:
            continue
        sample = samples.setdefault((item.tank_id, item.account_id), Sample())
        sample += Sample.from_item(item)
    return samples


def victory_ratios(samples: Mapping[K, Sample], z: float = DEFAULT_Z) -> dict[K, float]:
    """
    Convert samples to victory ratios.

    Samples the estimator rejects are dropped with a warning.
    """
    ratios: dict[K, float] = {}
    for key, sample in samples.items():
        try:
            ratios[key] = sample.victory_ratio(z)
        except ValueError as e:
            logger.warning(f"Dropping sample {key}: {e}")
    return ratios


@dataclass
class Aggregates:
    """Victory ratios produced by one aggregation pass."""
    vehicles: dict[int, float] = field(default_factory=dict)
    account_vehicles: dict[tuple[int, int], float] = field(default_factory=dict)


def aggregate(items: Iterable[TrainItem], z: float = DEFAULT_Z) -> Aggregates:
    """Aggregate a window into baseline and observed victory ratios."""
    items = list(items)
    return Aggregates(
        vehicles=victory_ratios(aggregate_by_vehicle(items), z),
        account_vehicles=victory_ratios(aggregate_by_account_vehicle(items), z),
    )
