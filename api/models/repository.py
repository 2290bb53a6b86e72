"""
SQL storage for train items and vehicle models.

Implements the ``TrainItemSource`` and ``VehicleModelStore`` interfaces of
the ML module on top of the async SQLAlchemy models.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from api.models.database import AsyncSessionLocal, TrainItemRecord, VehicleModelRecord
from ml.recommendations import VehicleModel, VehicleModelStore
from ml.window import TrainItem, TrainItemSource

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Train Items
# =============================================================================

class SqlTrainItemSource(TrainItemSource):
    """Train items of one realm, read in insertion order."""

    def __init__(
        self,
        realm: str,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ):
        self.realm = realm
        self.session_factory = session_factory

    @staticmethod
    def to_train_item(record: TrainItemRecord) -> TrainItem:
        return TrainItem(
            id=record.id,
            realm=record.realm,
            account_id=record.account_id,
            tank_id=record.tank_id,
            last_battle_time=as_utc(record.last_battle_time),
            n_battles=record.n_battles,
            n_wins=record.n_wins,
        )

    async def fetch_after(
        self,
        watermark: Optional[int],
        since: datetime,
        limit: int,
    ) -> list[TrainItem]:
        query = select(TrainItemRecord).where(
            TrainItemRecord.realm == self.realm,
            TrainItemRecord.last_battle_time >= as_utc(since),
        )
        if watermark is not None:
            query = query.where(TrainItemRecord.id > watermark)
        query = query.order_by(TrainItemRecord.id).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self.to_train_item(record) for record in result.scalars()]

    async def append(self, items: Iterable[TrainItem]) -> list[int]:
        """
        Append items to the source.

        Args:
            items: Items to insert; their ``id`` is ignored

        Returns:
            Cursor ids assigned to the inserted items, in order
        """
        records = [
            TrainItemRecord(
                realm=item.realm,
                account_id=item.account_id,
                tank_id=item.tank_id,
                last_battle_time=as_utc(item.last_battle_time),
                n_battles=item.n_battles,
                n_wins=item.n_wins,
            )
            for item in items
        ]
        if not records:
            return []

        async with self.session_factory() as session:
            session.add_all(records)
            await session.commit()

        logger.debug(f"Appended {len(records)} train items to realm {self.realm}")
        return [record.id for record in records]


# =============================================================================
# Vehicle Models
# =============================================================================

class SqlVehicleModelStore(VehicleModelStore):
    """Vehicle models, one row per tank, replaced wholesale on every upsert."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    @staticmethod
    def to_vehicle_model(record: VehicleModelRecord) -> VehicleModel:
        return VehicleModel(
            tank_id=record.tank_id,
            victory_ratio=record.victory_ratio,
            similar=[(entry["tank_id"], entry["similarity"]) for entry in record.similar],
        )

    @staticmethod
    def to_record(model: VehicleModel) -> VehicleModelRecord:
        return VehicleModelRecord(
            tank_id=model.tank_id,
            victory_ratio=model.victory_ratio,
            similar=[
                {"tank_id": tank_id, "similarity": similarity}
                for tank_id, similarity in model.similar
            ],
        )

    async def upsert_many(self, models: Iterable[VehicleModel]) -> int:
        n_models = 0
        async with self.session_factory() as session:
            async with session.begin():
                for model in models:
                    await session.merge(self.to_record(model))
                    n_models += 1
        logger.debug(f"Upserted {n_models} vehicle models")
        return n_models

    async def get_many(self, tank_ids: Iterable[int]) -> dict[int, VehicleModel]:
        tank_ids = list(set(tank_ids))
        if not tank_ids:
            return {}

        async with self.session_factory() as session:
            result = await session.execute(
                select(VehicleModelRecord).where(VehicleModelRecord.tank_id.in_(tank_ids))
            )
            return {
                record.tank_id: self.to_vehicle_model(record)
                for record in result.scalars()
            }
