"""
Shared fixtures and in-memory fakes for the test suite.
"""

import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

# Point the module-level engine at SQLite before any api module is imported
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'vehicle_recommender_test.db')}"
)
os.environ.setdefault("FACTORS_ENABLED", "false")
os.environ.setdefault("RUN_TRAINER", "false")

import pytest
import pytest_asyncio

from ml.recommendations import VehicleModel, VehicleModelStore
from ml.window import TrainItem, TrainItemSource
from trainer.factor_cache import FactorStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Fakes
# =============================================================================

class FakeTrainItemSource(TrainItemSource):
    """Train items held in a list, with ids assigned on append."""

    def __init__(self, realm: str = "ru"):
        self.realm = realm
        self.items: list[TrainItem] = []
        self.calls: list[tuple[Optional[int], datetime, int]] = []
        self.errors: list[Exception] = []

    async def append(self, items) -> list[int]:
        ids = []
        for item in items:
            item = replace(item, id=len(self.items) + 1)
            self.items.append(item)
            ids.append(item.id)
        return ids

    async def fetch_after(self, watermark, since, limit):
        self.calls.append((watermark, since, limit))
        if self.errors:
            raise self.errors.pop(0)
        return [
            item
            for item in self.items
            if (watermark is None or item.id > watermark) and item.last_battle_time >= since
        ][:limit]


class FakeVehicleStore(VehicleModelStore):
    """Vehicle models in a dict."""

    def __init__(self, models=()):
        self.models = {model.tank_id: model for model in models}
        self.n_upserts = 0

    async def upsert_many(self, models) -> int:
        models = list(models)
        for model in models:
            self.models[model.tank_id] = model
        self.n_upserts += 1
        return len(models)

    async def get_many(self, tank_ids):
        return {tank_id: self.models[tank_id] for tank_id in tank_ids if tank_id in self.models}


class FakeFactorStore(FactorStore):
    """Factor bytes in dicts, recording every write."""

    def __init__(self):
        self.accounts: dict[int, bytes] = {}
        self.vehicles: dict[int, bytes] = {}
        self.account_writes: list[dict[int, bytes]] = []
        self.closed = False

    async def get_account(self, account_id):
        return self.accounts.get(account_id)

    async def get_vehicles(self):
        return dict(self.vehicles)

    async def set_accounts(self, accounts):
        self.account_writes.append(dict(accounts))
        self.accounts.update(accounts)

    async def set_vehicles(self, vehicles):
        self.vehicles.update(vehicles)

    async def close(self):
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def make_item():
    """Build train items relative to a fixed clock."""
    def factory(account_id, tank_id, n_battles, n_wins, age=timedelta(hours=1), **kwargs):
        return TrainItem(
            account_id=account_id,
            tank_id=tank_id,
            n_battles=n_battles,
            n_wins=n_wins,
            last_battle_time=NOW - age,
            **kwargs,
        )
    return factory


@pytest.fixture
def source():
    """Empty in-memory train item source."""
    return FakeTrainItemSource()


@pytest.fixture
def vehicle_store():
    """Vehicle store with three related vehicles."""
    return FakeVehicleStore([
        VehicleModel(1, 0.5, [(2, 0.5)]),
        VehicleModel(2, 0.6, [(3, 1.0), (1, 0.5)]),
        VehicleModel(3, 0.4, [(2, 1.0)]),
    ])


@pytest.fixture
def factor_store():
    """Empty in-memory factor store."""
    return FakeFactorStore()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database."""
    from api.models.database import create_engine, create_session_factory, drop_db, init_db

    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await drop_db(engine)
    await engine.dispose()
