"""
Latent factor cache and online trainer

Keeps account and vehicle factor vectors in memory, trains them one battle at
a time and periodically flushes them to Redis.

- Vehicles: small set, kept in a plain dict and always flushed in full to the
  ``cf::vehicles`` hash.
- Accounts: kept in an LRU (``OrderedDict``). Updated accounts are tracked in a
  dirty set and written to ``cf::accounts::{id}`` with a TTL on flush. Clean
  accounts are evicted as soon as the LRU outgrows its capacity; dirty ones
  stay until the next flush has written them.

A background task started with ``start()`` flushes every ``flush_interval``
seconds; ``stop()`` cancels it and writes whatever is still dirty.

A vector that is missing from the store, has the wrong length, or cannot be
decoded is replaced by a fresh random one.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterable, Optional

import numpy as np
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from api.core.config import Settings
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
from ml.recommendations import Prediction, sort_predictions
from ml.window import TrainItem

logger = logging.getLogger(__name__)

# Errors the periodic flusher logs and retries on its next tick
FLUSH_ERRORS = (asyncio.TimeoutError, RedisError, OSError)

ACCOUNT_KEY_PREFIX = "cf::accounts::"
VEHICLES_KEY = "cf::vehicles"

# Some vehicles are copies of others and share their factors
REMAP_TANK_ID = {
    64273: 55313,  # 8,8 cm Pak 43 Jagdtiger
    64769: 9217,  # IS-6 Fearless
    64801: 2849,  # T34 Independence
}


def remap_tank_id(tank_id: int) -> int:
    return REMAP_TANK_ID.get(tank_id, tank_id)


def account_key(account_id: int) -> str:
    return f"{ACCOUNT_KEY_PREFIX}{account_id}"


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class FactorConfig:
    """Hyper-parameters and cache limits of the latent factor model."""
    n_factors: int = 8
    learning_rate: float = 0.2
    regularization: float = 0.000001
    factor_std: float = 0.1
    account_cache_size: int = 500_000
    flush_interval: float = 60.0  # seconds
    account_ttl: timedelta = timedelta(days=61)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FactorConfig":
        return cls(
            n_factors=settings.n_factors,
            learning_rate=settings.learning_rate,
            regularization=settings.regularization,
            factor_std=settings.factor_std,
            account_cache_size=settings.account_cache_size,
            flush_interval=settings.flush_interval.total_seconds(),
            account_ttl=settings.account_ttl,
        )


# =============================================================================
# Persistent Store
# =============================================================================

class FactorStore(ABC):
    """Binary-serialized factor vectors."""

    @abstractmethod
    async def get_account(self, account_id: int) -> Optional[bytes]:
        """Fetch one account's vector, None if absent or expired."""

    @abstractmethod
    async def get_vehicles(self) -> dict[int, bytes]:
        """Fetch the whole vehicle map."""

    @abstractmethod
    async def set_accounts(self, accounts: dict[int, bytes]) -> None:
        """Write account vectors, each with the account TTL."""

    @abstractmethod
    async def set_vehicles(self, vehicles: dict[int, bytes]) -> None:
        """Write vehicle vectors into the vehicle map."""

    async def close(self) -> None:
        """Release the connection, if any."""


class RedisFactorStore(FactorStore):
    """Factor store on top of ``redis.asyncio``."""

    def __init__(self, redis: aioredis.Redis, account_ttl: timedelta):
        self.redis = redis
        self.account_ttl = account_ttl

    async def get_account(self, account_id: int) -> Optional[bytes]:
        return await self.redis.get(account_key(account_id))

    async def get_vehicles(self) -> dict[int, bytes]:
        raw = await self.redis.hgetall(VEHICLES_KEY)
        return {int(tank_id): value for tank_id, value in raw.items()}

    async def set_accounts(self, accounts: dict[int, bytes]) -> None:
        if not accounts:
            return
        ttl = int(self.account_ttl.total_seconds())
        async with self.redis.pipeline(transaction=False) as pipeline:
            for account_id, value in accounts.items():
                pipeline.set(account_key(account_id), value, ex=ttl)
            await pipeline.execute()

    async def set_vehicles(self, vehicles: dict[int, bytes]) -> None:
        if not vehicles:
            return
        await self.redis.hset(
            VEHICLES_KEY,
            mapping={str(tank_id): value for tank_id, value in vehicles.items()},
        )

    async def close(self) -> None:
        await self.redis.aclose()


def create_redis(redis_url: str) -> aioredis.Redis:
    """Create a binary-safe Redis client."""
    return aioredis.from_url(
        redis_url,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


# =============================================================================
# Cache
# =============================================================================

class LatentFactorCache:
    """
    In-memory factor vectors with online SGD training.

    Every public method serializes on one lock per cache instance, so that
    concurrent training steps on the same account never lose an update and
    flushes never observe a half-applied step.
    """

    def __init__(
        self,
        store: FactorStore,
        config: Optional[FactorConfig] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or FactorConfig()
        self.rng = rng or np.random.default_rng()
        self.clock = clock

        self.vehicles: dict[int, np.ndarray] = {}
        self.accounts: OrderedDict[int, np.ndarray] = OrderedDict()
        self.modified_account_ids: set[int] = set()
        self.loss = BCELoss()

        self._vehicles_loaded = False
        self._last_flush = clock()
        self._lock = asyncio.Lock()
        self._running = False
        self._flush_task: Optional[asyncio.Task] = None

    # === Loading (lock held) ===

    def _initialize(self, x: Optional[np.ndarray]) -> np.ndarray:
        x, _ = initialize_factors(
            x, self.config.n_factors, self.config.factor_std, self.rng
        )
        return x

    async def _load_vehicles(self) -> None:
        if self._vehicles_loaded:
            return
        for tank_id, data in (await self.store.get_vehicles()).items():
            try:
                self.vehicles[tank_id] = self._initialize(unpack_vector(data))
            except FactorDecodeError as e:
                logger.error(f"Skipping corrupt factors of vehicle #{tank_id}: {e}")
        self._vehicles_loaded = True
        logger.info(f"Loaded factors of {len(self.vehicles)} vehicles")

    async def _account(self, account_id: int) -> np.ndarray:
        x = self.accounts.get(account_id)
        if x is not None:
            self.accounts.move_to_end(account_id)
            return x

        stored = None
        data = await self.store.get_account(account_id)
        if data is not None:
            try:
                stored = unpack_vector(data)
            except FactorDecodeError as e:
                logger.error(f"Reinitializing corrupt factors of account #{account_id}: {e}")

        x = self._initialize(stored)
        self.accounts[account_id] = x
        self._evict_clean()
        return x

    def _evict_clean(self) -> None:
        # Stops at the oldest dirty account, flush evicts past it
        while len(self.accounts) > self.config.account_cache_size:
            oldest = next(iter(self.accounts))
            if oldest in self.modified_account_ids:
                break
            self.accounts.popitem(last=False)

    def _vehicle(self, tank_id: int) -> np.ndarray:
        tank_id = remap_tank_id(tank_id)
        x = self._initialize(self.vehicles.get(tank_id))
        self.vehicles[tank_id] = x
        return x

    # === Public API ===

    async def account(self, account_id: int) -> np.ndarray:
        """Copy of an account's factors, loaded or initialized on demand."""
        async with self._lock:
            return (await self._account(account_id)).copy()

    async def vehicle(self, tank_id: int) -> np.ndarray:
        """Copy of a vehicle's factors, initialized on demand."""
        async with self._lock:
            await self._load_vehicles()
            return self._vehicle(tank_id).copy()

    async def train(self, account_id: int, tank_id: int, is_win: bool) -> float:
        """
        Apply one SGD step for a single battle.

        Args:
            account_id: Account that fought the battle
            tank_id: Vehicle the battle was fought on
            is_win: Battle outcome

        Returns:
            The prediction made before the step

        Raises:
            ValueError: If the step diverges; the stored vectors are unchanged
        """
        async with self._lock:
            await self._load_vehicles()
            x = await self._account(account_id)
            y = self._vehicle(tank_id)

            prediction = predict_win_rate(y, x)
            label = 1.0 if is_win else 0.0
            self.loss.push(prediction, label)

            new_x, new_y = x.copy(), y.copy()
            sgd_step(
                new_x,
                new_y,
                label - prediction,
                self.config.learning_rate,
                self.config.regularization,
            )
            x[:] = new_x
            y[:] = new_y
            self.modified_account_ids.add(account_id)
            return prediction

    async def fit(self, items: Iterable[TrainItem]) -> int:
        """
        Train on battle deltas, one step per battle.

        Diverging steps are logged and skipped.

        Returns:
            Number of steps applied
        """
        n_steps = 0
        for item in items:
            for label in make_targets(item.n_battles, item.n_wins, self.rng):
                try:
                    await self.train(item.account_id, item.tank_id, label == 1.0)
                    n_steps += 1
                except ValueError as e:
                    logger.error(
                        f"Skipping step of account #{item.account_id} "
                        f"on vehicle #{item.tank_id}: {e}"
                    )
        logger.debug(f"Trained {n_steps} steps, loss={self.loss.average:.4f}")
        return n_steps

    async def predict(self, account_id: int, tank_ids: Iterable[int]) -> list[Prediction]:
        """Predict win rates of an account; vehicles without factors are skipped."""
        async with self._lock:
            await self._load_vehicles()
            x = await self._account(account_id)
            predictions = [
                Prediction(tank_id, predict_win_rate(self.vehicles[remap_tank_id(tank_id)], x))
                for tank_id in dict.fromkeys(tank_ids)
                if remap_tank_id(tank_id) in self.vehicles
            ]
        return sort_predictions(predictions)

    # === Flushing ===

    def should_flush(self) -> bool:
        return self.clock() - self._last_flush >= self.config.flush_interval

    def _pack_all(self, vectors: dict[int, np.ndarray], kind: str) -> dict[int, bytes]:
        packed = {}
        for key, x in vectors.items():
            try:
                packed[key] = pack_vector(x)
            except (TypeError, ValueError) as e:
                logger.error(f"Skipping {kind} #{key} on flush: {e}")
        return packed

    async def flush(self) -> int:
        """
        Write dirty accounts and the full vehicle map, then shrink the LRU.

        Returns:
            Number of accounts written
        """
        async with self._lock:
            accounts = self._pack_all(
                {
                    account_id: self.accounts[account_id]
                    for account_id in self.modified_account_ids
                    if account_id in self.accounts
                },
                "account",
            )
            vehicles = self._pack_all(self.vehicles, "vehicle")
            for copy_id, tank_id in REMAP_TANK_ID.items():
                if tank_id in vehicles:
                    vehicles[copy_id] = vehicles[tank_id]

            await self.store.set_accounts(accounts)
            await self.store.set_vehicles(vehicles)

            self.modified_account_ids.clear()
            n_evicted = 0
            while len(self.accounts) > self.config.account_cache_size:
                self.accounts.popitem(last=False)
                n_evicted += 1
            self._last_flush = self.clock()

        logger.info(
            f"Flushed {len(accounts)} accounts and {len(vehicles)} vehicles, "
            f"evicted {n_evicted} accounts"
        )
        return len(accounts)

    async def maybe_flush(self) -> bool:
        """Flush if the flush interval has elapsed."""
        if not self.should_flush():
            return False
        await self.flush()
        return True

    async def start(self) -> None:
        """Start flushing in the background every ``flush_interval`` seconds."""
        if self._running:
            logger.warning("Factor flusher already running")
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_forever())
        logger.info(f"Factor flusher started, interval={self.config.flush_interval}s")

    async def stop(self) -> None:
        """Stop the background flusher and write the remaining dirty factors."""
        self._running = False
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        try:
            await self.flush()
        except FLUSH_ERRORS as e:
            logger.error(f"Failed to flush factors on shutdown: {e}")
        logger.info("Factor flusher stopped")

    async def _flush_forever(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.flush_interval)
                await self.maybe_flush()
            except asyncio.CancelledError:
                break
            except FLUSH_ERRORS as e:
                logger.error(f"Factor flush failed, retrying next tick: {e}")


def create_factor_cache(settings: Settings, redis: Optional[aioredis.Redis] = None) -> LatentFactorCache:
    """
    Factory function to create a Redis-backed LatentFactorCache.

    Args:
        settings: Application settings
        redis: Existing client, a new one from ``settings.redis_url`` if omitted

    Returns:
        Configured LatentFactorCache instance
    """
    store = RedisFactorStore(redis or create_redis(settings.redis_url), settings.account_ttl)
    return LatentFactorCache(store, FactorConfig.from_settings(settings))
