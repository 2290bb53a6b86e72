"""
Vehicle Recommender - Machine Learning Module

Collaborative filtering over per-account vehicle win rates:
- Wilson score win-rate estimation
- Windowed aggregation of battle deltas
- Vehicle cosine similarity over a sparse residual matrix
- Similarity-weighted win-rate prediction
- Online latent factor math

Example:
    from ml.aggregator import aggregate
    from ml.similarity import RatingsMatrix, SimilarityEngine
    from ml.recommendations import build_vehicle_models

    aggregates = aggregate(window.items)
    matrix = RatingsMatrix.build(aggregates.vehicles, aggregates.account_vehicles)
    similarities = await SimilarityEngine(concurrency=4).compute(matrix)
    models = build_vehicle_models(aggregates.vehicles, similarities)
"""

from ml.aggregator import (
    Aggregates,
    Sample,
    aggregate,
    aggregate_by_account_vehicle,
    aggregate_by_vehicle,
    victory_ratios,
)
from ml.factors import (
    BCELoss,
    FactorDecodeError,
    initialize_factors,
    make_targets,
    pack_vector,
    predict_win_rate,
    sgd_step,
    unpack_vector,
)
from ml.recommendations import (
    Prediction,
    Recommender,
    VehicleModel,
    VehicleModelStore,
    build_vehicle_models,
    create_recommender,
    filter_predictions,
)
from ml.similarity import (
    RatingsMatrix,
    SimilarityEngine,
    cosine_similarity,
    sparse_dot,
)
from ml.statistics import (
    ConfidenceInterval,
    ConfidenceLevel,
    EstimatorError,
    IntervalOrdering,
    wilson_score,
    wilson_score_with_cc,
)
from ml.window import TrainItem, TrainItemSource, TrainItemWindow

__all__ = [
    # Estimator
    "ConfidenceInterval",
    "ConfidenceLevel",
    "EstimatorError",
    "IntervalOrdering",
    "wilson_score",
    "wilson_score_with_cc",
    # Window
    "TrainItem",
    "TrainItemSource",
    "TrainItemWindow",
    # Aggregator
    "Aggregates",
    "Sample",
    "aggregate",
    "aggregate_by_account_vehicle",
    "aggregate_by_vehicle",
    "victory_ratios",
    # Similarity
    "RatingsMatrix",
    "SimilarityEngine",
    "cosine_similarity",
    "sparse_dot",
    # Recommender
    "Prediction",
    "Recommender",
    "VehicleModel",
    "VehicleModelStore",
    "build_vehicle_models",
    "create_recommender",
    "filter_predictions",
    # Latent factors
    "BCELoss",
    "FactorDecodeError",
    "initialize_factors",
    "make_targets",
    "pack_vector",
    "predict_win_rate",
    "sgd_step",
    "unpack_vector",
]

__version__ = "0.1.0"
