"""
Train item routes for the Vehicle Recommender API.

Accepts battle deltas from the crawler and appends them to the train item
source of the configured realm.
"""

import logging

from fastapi import APIRouter, status

from api.core.dependencies import TrainItemSourceDep
from api.models.schemas import ErrorResponse, TrainItemCreate, TrainItemsCreated
from ml.window import TrainItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/train-items", tags=["Train Items"])


@router.post(
    "",
    response_model=TrainItemsCreated,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "Items appended"},
        422: {"description": "Malformed item", "model": ErrorResponse},
    },
    summary="Append train items",
)
async def create_train_items(
    items: list[TrainItemCreate],
    source: TrainItemSourceDep,
) -> TrainItemsCreated:
    """Append battle deltas; items without a realm get the configured one."""
    ids = await source.append(
        TrainItem(
            realm=item.realm or source.realm,
            account_id=item.account_id,
            tank_id=item.tank_id,
            last_battle_time=item.last_battle_time,
            n_battles=item.n_battles,
            n_wins=item.n_wins,
        )
        for item in items
    )
    logger.debug(f"Appended {len(ids)} train items")
    return TrainItemsCreated(n_items=len(ids), ids=ids)
