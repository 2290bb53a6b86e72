#!/usr/bin/env python3
"""
Vehicle Recommender - Trainer entry point

Runs the retraining loop against the configured database, optionally
training the latent factor model on the same train items.

Settings come from the environment (see ``api.core.config``); command line
options override a subset of them.
"""

import argparse
import asyncio
import logging
from datetime import timedelta
from typing import Optional, Sequence

from api.core.config import Settings, get_settings
from api.models.database import init_db
from api.models.repository import SqlTrainItemSource, SqlVehicleModelStore
from trainer.factor_cache import create_factor_cache
from trainer.loop import create_retraining_loop

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vehicle Recommender Trainer")
    parser.add_argument("--realm", help="Realm to train on")
    parser.add_argument(
        "--train-period-hours",
        type=float,
        help="Length of the training window in hours",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds to sleep between retraining cycles",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum number of similarity jobs in flight",
    )
    parser.add_argument(
        "--factors",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Train the latent factor model on new items",
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--init-db", action="store_true", help="Create missing tables first")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Return a copy of ``settings`` with the command line options applied."""
    update = {}
    if args.realm is not None:
        update["realm"] = args.realm
    if args.train_period_hours is not None:
        update["train_period"] = timedelta(hours=args.train_period_hours)
    if args.interval is not None:
        update["retrain_interval"] = timedelta(seconds=args.interval)
    if args.concurrency is not None:
        update["similarity_concurrency"] = args.concurrency
    if args.factors is not None:
        update["factors_enabled"] = args.factors
    return settings.model_copy(update=update)


async def main(argv: Optional[Sequence[str]] = None) -> None:
    """Run the trainer."""
    args = build_parser().parse_args(argv)
    settings = apply_overrides(get_settings(), args)

    log_level = logging.DEBUG if args.verbose or settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.init_db:
        await init_db()
        logger.info("Database initialized successfully")

    factor_cache = create_factor_cache(settings) if settings.factors_enabled else None
    loop = create_retraining_loop(
        settings,
        SqlTrainItemSource(settings.realm),
        SqlVehicleModelStore(),
        factor_cache=factor_cache,
    )
    logger.info(
        f"Training realm {settings.realm} over {settings.train_period}, "
        f"factors {'enabled' if factor_cache else 'disabled'}"
    )

    try:
        if args.once:
            await loop.run_cycle()
            return

        if factor_cache is not None:
            await factor_cache.start()
        await loop.start()
        await asyncio.Event().wait()
    finally:
        await loop.stop()
        if factor_cache is not None:
            await factor_cache.stop()
            await factor_cache.store.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
