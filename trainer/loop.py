"""
Retraining loop

Periodically rebuilds the vehicle similarity graph:

    refresh window -> aggregate -> similarity -> persist -> sleep

Each stage completes before the next begins, so the similarity pass always
reads a frozen ratings matrix and the store only ever receives complete
adjacency lists. A failing cycle is logged and retried on the next tick; the
loop itself only stops on ``stop()`` or process shutdown.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from ml.aggregator import aggregate
from ml.recommendations import VehicleModelStore, build_vehicle_models
from ml.similarity import RatingsMatrix, SimilarityEngine
from ml.window import TrainItem, TrainItemWindow
from trainer.factor_cache import LatentFactorCache

logger = logging.getLogger(__name__)

# I/O failures that only abort the current cycle
TRANSIENT_ERRORS = (asyncio.TimeoutError, SQLAlchemyError, RedisError, OSError)


# =============================================================================
# Exceptions
# =============================================================================

class TrainingError(Exception):
    """Base exception for retraining cycle failures."""
    pass


class PullTimeoutError(TrainingError):
    """Pulling new train items took longer than the pull timeout."""
    pass


# =============================================================================
# Results
# =============================================================================

@dataclass
class CycleResult:
    """Summary of one retraining cycle."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    n_items: int = 0
    n_new_items: int = 0
    n_vehicles: int = 0
    n_ratings: int = 0
    n_models: int = 0
    n_factor_steps: int = 0
    elapsed: float = 0.0


# =============================================================================
# Loop
# =============================================================================

class RetrainingLoop:
    """Drives the train-item window, similarity engine and model store."""

    def __init__(
        self,
        window: TrainItemWindow,
        store: VehicleModelStore,
        engine: SimilarityEngine,
        z: float,
        interval: float,
        pull_timeout: float,
        factor_cache: Optional[LatentFactorCache] = None,
    ):
        self.window = window
        self.store = store
        self.engine = engine
        self.z = z
        self.interval = interval
        self.pull_timeout = pull_timeout
        self.factor_cache = factor_cache

        # Pulled items not yet given to the factor cache, kept across failed cycles
        self.pending_factor_items: deque[TrainItem] = deque()
        self.last_result: Optional[CycleResult] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def refresh_window(self) -> list[TrainItem]:
        on_page = self.pending_factor_items.extend if self.factor_cache is not None else None
        try:
            return await asyncio.wait_for(
                self.window.refresh(on_page),
                timeout=self.pull_timeout,
            )
        except asyncio.TimeoutError as e:
            raise PullTimeoutError(
                f"pulling train items took longer than {self.pull_timeout:.0f}s"
            ) from e

    async def fit_pending(self) -> int:
        """
        Train the factor cache on the pulled items, oldest first.

        Items leave the buffer only once trained, so a cycle that fails
        before or during training hands them to the next one.

        Returns:
            Number of SGD steps applied
        """
        n_steps = 0
        while self.pending_factor_items:
            n_steps += await self.factor_cache.fit([self.pending_factor_items[0]])
            self.pending_factor_items.popleft()
        if n_steps:
            logger.info(
                f"Trained {n_steps} factor steps, loss={self.factor_cache.loss.average:.4f}"
            )
        return n_steps

    async def run_cycle(self) -> CycleResult:
        """
        Run one full retraining cycle.

        Returns:
            Summary of the cycle

        Raises:
            PullTimeoutError: If the window refresh timed out
        """
        result = CycleResult()
        start = time.perf_counter()

        new_items = await self.refresh_window()
        result.n_items = len(self.window)
        result.n_new_items = len(new_items)

        aggregates = aggregate(self.window.items, self.z)
        matrix = RatingsMatrix.build(aggregates.vehicles, aggregates.account_vehicles)
        result.n_vehicles, result.n_ratings = len(matrix.tank_ids), matrix.nnz

        similarities = await self.engine.compute(matrix)
        models = build_vehicle_models(aggregates.vehicles, similarities)
        result.n_models = await self.store.upsert_many(models)

        if self.factor_cache is not None:
            result.n_factor_steps = await self.fit_pending()

        result.elapsed = time.perf_counter() - start
        self.last_result = result
        logger.info(
            f"Cycle finished in {result.elapsed:.1f}s: {result.n_items} items "
            f"(+{result.n_new_items}), {result.n_vehicles} vehicles, "
            f"{result.n_ratings} ratings, {result.n_models} models"
        )
        return result

    # === Background Loop ===

    async def start(self) -> None:
        """Start the loop as a background task."""
        if self._running:
            logger.warning("Retraining loop already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_forever())
        logger.info("Retraining loop started")

    async def stop(self) -> None:
        """Stop the background task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Retraining loop stopped")

    async def _run_forever(self) -> None:
        """Main retraining loop."""
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except (TrainingError, *TRANSIENT_ERRORS) as e:
                logger.error(f"Retraining cycle failed, retrying in {self.interval:.0f}s: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error in retraining cycle: {e}")

            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break


def create_retraining_loop(
    settings,
    source,
    store: VehicleModelStore,
    factor_cache: Optional[LatentFactorCache] = None,
) -> RetrainingLoop:
    """
    Factory function to create a RetrainingLoop from settings.

    Args:
        settings: Application settings
        source: Train item source the window reads from
        store: Vehicle model store the loop writes to
        factor_cache: Optional latent factor cache to train on new items

    Returns:
        Configured RetrainingLoop instance
    """
    window = TrainItemWindow(
        source,
        train_period=settings.train_period,
        page_size=settings.page_size,
    )
    return RetrainingLoop(
        window=window,
        store=store,
        engine=SimilarityEngine(settings.similarity_concurrency),
        z=settings.confidence_z,
        interval=settings.retrain_interval.total_seconds(),
        pull_timeout=settings.pull_timeout.total_seconds(),
        factor_cache=factor_cache,
    )
