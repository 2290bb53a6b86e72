"""
SQLAlchemy async models for the Vehicle Recommender.

Uses PostgreSQL with async support via asyncpg. Any SQLAlchemy async driver
works; the test suite runs on aiosqlite.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.ext.asyncio import (
    AsyncAttrs,
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from api.core.config import settings


# =============================================================================
# Database Engine and Session
# =============================================================================

def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, with pool sizing for server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = create_engine(settings.database_url, echo=settings.debug)

AsyncSessionLocal = create_session_factory(engine)


# =============================================================================
# Base Model
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""
    pass


# Auto-increment cursor that stays an INTEGER PRIMARY KEY on SQLite
CursorId = BigInteger().with_variant(Integer, "sqlite")


# =============================================================================
# Train Item Model
# =============================================================================

class TrainItemRecord(Base):
    """Battle delta of an account on a vehicle, appended by the crawler."""
    __tablename__ = "train_items"

    id: Mapped[int] = mapped_column(
        CursorId,
        primary_key=True,
        autoincrement=True,
    )
    realm: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
    )
    account_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    tank_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    last_battle_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    n_battles: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    n_wins: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_train_items_realm_last_battle_time", "realm", "last_battle_time"),
    )


# =============================================================================
# Vehicle Model
# =============================================================================

class VehicleModelRecord(Base):
    """Baseline win rate and similar vehicles of one tank."""
    __tablename__ = "vehicle_models"

    tank_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
    )
    victory_ratio: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    # [{"tank_id": int, "similarity": float}, ...] sorted by similarity
    similar: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Initialization
# =============================================================================

async def init_db(bind: AsyncEngine = engine):
    """Initialize database tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(bind: AsyncEngine = engine):
    """Drop all database tables (use with caution)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
