"""
Vehicle Recommender - similarity-weighted win-rate prediction

Predicts the win rate an account would achieve on vehicles it has not played
much, from its residuals on the vehicles it has played.

For every known vehicle the residual is the account's victory ratio minus the
vehicle's population baseline. A target's prediction is the
similarity-weighted mean of the residuals of its known neighbours, added back
onto the target's own baseline:

    p(target) = sum(sim * residual) / sum(sim) + baseline(target)

Targets without a stored model or without known neighbours produce no
prediction; they are never an error.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from ml.aggregator import DEFAULT_Z, Sample
from ml.similarity import Adjacency

logger = logging.getLogger(__name__)


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class VehicleModel:
    """Baseline win rate and positively correlated neighbours of a vehicle."""
    tank_id: int
    victory_ratio: float
    similar: list[tuple[int, float]] = field(default_factory=list)

    def similarity_to(self, tank_id: int) -> Optional[float]:
        for other_id, similarity in self.similar:
            if other_id == tank_id:
                return similarity
        return None


@dataclass(frozen=True)
class Prediction:
    """Predicted win rate on a vehicle."""
    tank_id: int
    p: float


class VehicleModelStore(ABC):
    """Persistent vehicle models, keyed by tank id."""

    @abstractmethod
    async def upsert_many(self, models: Iterable[VehicleModel]) -> int:
        """Replace the stored models wholesale and return how many were written."""

    @abstractmethod
    async def get_many(self, tank_ids: Iterable[int]) -> dict[int, VehicleModel]:
        """Fetch the models that exist for ``tank_ids``."""

    async def get(self, tank_id: int) -> Optional[VehicleModel]:
        return (await self.get_many([tank_id])).get(tank_id)


# =============================================================================
# Model Building
# =============================================================================

def build_vehicle_models(
    vehicle_ratios: Mapping[int, float],
    similarities: Adjacency,
) -> list[VehicleModel]:
    """
    Turn a cycle's baselines and similarity graph into vehicle models.

    Only strictly positive similarities are kept, self references are
    dropped, and each neighbour list is sorted by descending similarity.

    Args:
        vehicle_ratios: Baseline victory ratio per tank
        similarities: Symmetric adjacency from the similarity engine

    Returns:
        One model per vehicle with a baseline
    """
    models = []
    for tank_id, victory_ratio in vehicle_ratios.items():
        similar = [
            (other_id, similarity)
            for other_id, similarity in similarities.get(tank_id, {}).items()
            if other_id != tank_id and similarity > 0.0
        ]
        similar.sort(key=lambda pair: pair[1], reverse=True)
        models.append(VehicleModel(tank_id, victory_ratio, similar))
    return models


# =============================================================================
# Recommender
# =============================================================================

def sort_predictions(predictions: Iterable[Prediction]) -> list[Prediction]:
    """Sort predictions by descending ``p``."""
    return sorted(predictions, key=lambda prediction: prediction.p, reverse=True)


def filter_predictions(
    predictions: Iterable[Prediction],
    min_prediction: float,
) -> list[Prediction]:
    return [prediction for prediction in predictions if prediction.p >= min_prediction]


class Recommender:
    """Serves predictions from the persisted vehicle models."""

    def __init__(self, store: VehicleModelStore):
        self.store = store

    @staticmethod
    def merge_known(known: Iterable[tuple[int, Sample]]) -> dict[int, Sample]:
        merged: dict[int, Sample] = {}
        for tank_id, sample in known:
            merged[tank_id] = merged.get(tank_id, Sample()) + sample
        return merged

    @staticmethod
    def residuals(
        known: Mapping[int, Sample],
        models: Mapping[int, VehicleModel],
        z: float,
    ) -> dict[int, float]:
        """Observed victory ratio minus stored baseline, per known vehicle."""
        residuals = {}
        for tank_id, sample in known.items():
            try:
                ratio = sample.victory_ratio(z)
            except ValueError as e:
                logger.warning(f"Skipping known vehicle #{tank_id}: {e}")
                continue
            model = models.get(tank_id)
            residuals[tank_id] = ratio - model.victory_ratio if model else ratio
        return residuals

    @staticmethod
    def predict(model: VehicleModel, residuals: Mapping[int, float]) -> Optional[float]:
        """Weighted prediction for one target, or None if it cannot be made."""
        numerator = 0.0
        denominator = 0.0
        for source_id, similarity in model.similar:
            residual = residuals.get(source_id)
            if residual is not None:
                numerator += similarity * residual
                denominator += similarity
        if denominator == 0.0:
            return None
        p = numerator / denominator + model.victory_ratio
        return p if math.isfinite(p) else None

    async def recommend(
        self,
        known: Sequence[tuple[int, Sample]],
        targets: Sequence[int],
        z: float = DEFAULT_Z,
    ) -> list[Prediction]:
        """
        Predict win rates on ``targets``.

        Args:
            known: Samples of the vehicles the account has played
            targets: Tank ids to predict
            z: z-value of the victory ratio estimator

        Returns:
            Predictions sorted by descending win rate
        """
        if not known or not targets:
            return []

        samples = self.merge_known(known)
        models = await self.store.get_many(set(samples) | set(targets))
        residuals = self.residuals(samples, models, z)

        predictions = []
        for target_id in dict.fromkeys(targets):
            model = models.get(target_id)
            if model is None:
                continue
            p = self.predict(model, residuals)
            if p is not None:
                predictions.append(Prediction(target_id, p))

        logger.debug(
            f"Predicted {len(predictions)} of {len(targets)} targets "
            f"from {len(residuals)} known vehicles"
        )
        return sort_predictions(predictions)


def create_recommender(store: VehicleModelStore) -> Recommender:
    """
    Factory function to create a Recommender.

    Args:
        store: Vehicle model store to read from

    Returns:
        Configured Recommender instance
    """
    return Recommender(store)


# Export public API
__all__ = [
    "Prediction",
    "Recommender",
    "VehicleModel",
    "VehicleModelStore",
    "build_vehicle_models",
    "create_recommender",
    "filter_predictions",
    "sort_predictions",
]
