"""
Train-item window

A time-bounded, in-memory copy of recent battle deltas. The window is
refreshed from an append-only source by watermark: every refresh evicts
items that fell out of the training period and pulls only the items inserted
after the last one seen.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrainItem:
    """One battle delta of an account on a vehicle."""
    account_id: int
    tank_id: int
    last_battle_time: datetime
    n_battles: int
    n_wins: int = 0
    realm: str = "ru"
    id: Optional[int] = None  # source cursor, assigned on insert


PageCallback = Callable[[list[TrainItem]], None]


class TrainItemSource(ABC):
    """Append-ordered collection of train items."""

    @abstractmethod
    async def fetch_after(
        self,
        watermark: Optional[int],
        since: datetime,
        limit: int,
    ) -> list[TrainItem]:
        """
        Fetch items inserted after ``watermark``.

        Args:
            watermark: Last seen cursor, or None to read from the start
            since: Only items with ``last_battle_time >= since``
            limit: Maximum number of items to return

        Returns:
            Items ordered by their cursor
        """


class TrainItemWindow:
    """
    Growable collection of train items plus a monotonic watermark.

    The watermark only moves forward and only when a pull returns items, so
    an empty refresh leaves both the window and the watermark untouched.
    """

    def __init__(
        self,
        source: TrainItemSource,
        train_period: timedelta,
        page_size: int = 100_000,
        clock: Callable[[], datetime] = utc_now,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.source = source
        self.train_period = train_period
        self.page_size = page_size
        self.clock = clock
        self.items: list[TrainItem] = []
        self.watermark: Optional[int] = None

    def __len__(self) -> int:
        return len(self.items)

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or self.clock()) - self.train_period

    def evict(self, now: Optional[datetime] = None) -> int:
        """Drop expired items and return how many were dropped."""
        cutoff = self.cutoff(now)
        before = len(self.items)
        self.items = [item for item in self.items if item.last_battle_time >= cutoff]
        return before - len(self.items)

    async def pull(
        self,
        now: Optional[datetime] = None,
        on_page: Optional[PageCallback] = None,
    ) -> list[TrainItem]:
        """
        Read every page after the watermark and append it to the window.

        Args:
            now: Reference time of the cutoff
            on_page: Called with the fresh items of each page as soon as the
                watermark has moved past them

        Raises:
            ValueError: If the source returns an item without a cursor id
        """
        cutoff = self.cutoff(now)
        pulled: list[TrainItem] = []

        while True:
            page = await self.source.fetch_after(self.watermark, cutoff, self.page_size)
            if not page:
                break

            if any(item.id is None for item in page):
                raise ValueError(
                    f"{type(self.source).__name__} returned a train item without a cursor id"
                )
            self.watermark = max(item.id for item in page)
            fresh = [item for item in page if item.last_battle_time >= cutoff]
            self.items.extend(fresh)
            pulled.extend(fresh)
            if on_page is not None:
                on_page(fresh)
            logger.debug(f"Pulled {len(page)} train items, watermark={self.watermark}")

            if len(page) < self.page_size:
                break

        return pulled

    async def refresh(self, on_page: Optional[PageCallback] = None) -> list[TrainItem]:
        """
        Evict expired items, then pull new ones.

        Args:
            on_page: Forwarded to ``pull``

        Returns:
            The newly appended items
        """
        now = self.clock()
        n_evicted = self.evict(now)
        pulled = await self.pull(now, on_page)
        logger.info(
            f"Window refreshed: +{len(pulled)} -{n_evicted} items, "
            f"{len(self.items)} total"
        )
        return pulled
