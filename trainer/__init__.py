"""
Vehicle Recommender - Trainer

Long-running processes around the ML module: the retraining loop that keeps
the vehicle similarity graph fresh, the Redis-backed latent factor cache,
and an HTTP client for the recommendation API.
"""

from .client import RecommenderClient, RecommenderClientError
from .factor_cache import (
    FactorConfig,
    FactorStore,
    LatentFactorCache,
    RedisFactorStore,
    create_factor_cache,
    create_redis,
)
from .loop import (
    CycleResult,
    PullTimeoutError,
    RetrainingLoop,
    TrainingError,
    create_retraining_loop,
)

__version__ = "0.1.0"
__all__ = [
    # Retraining loop
    "RetrainingLoop",
    "CycleResult",
    "create_retraining_loop",

    # Latent factors
    "LatentFactorCache",
    "FactorConfig",
    "FactorStore",
    "RedisFactorStore",
    "create_factor_cache",
    "create_redis",

    # Client
    "RecommenderClient",

    # Exceptions
    "TrainingError",
    "PullTimeoutError",
    "RecommenderClientError",
]
