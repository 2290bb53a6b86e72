"""
Recommendation routes for the Vehicle Recommender API.

Serves similarity-weighted win-rate predictions from the persisted vehicle
models. Targets that cannot be predicted are left out of the response.
"""

import logging

from fastapi import APIRouter

from api.core.dependencies import Context, RecommenderDep
from api.models.schemas import (
    ErrorResponse,
    PredictionResponse,
    RecommendRequest,
    RecommendResponse,
)
from ml.aggregator import Sample
from ml.recommendations import filter_predictions
from ml.statistics import ConfidenceLevel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Recommendations"])


@router.post(
    "/recommend",
    response_model=RecommendResponse,
    responses={
        200: {"description": "Predictions, possibly empty"},
        422: {"description": "Malformed request", "model": ErrorResponse},
    },
    summary="Predict win rates",
    description="Predict win rates on vehicles from the account's known vehicle tallies.",
)
async def recommend(
    payload: RecommendRequest,
    recommender: RecommenderDep,
    context: Context,
) -> RecommendResponse:
    """
    Predict win rates on the requested vehicles.

    Each given vehicle contributes its residual win rate to the predictions
    of similar vehicles. Predictions below ``min_prediction`` are dropped.
    """
    z = (
        ConfidenceLevel[payload.confidence_level.upper()].z_value
        if payload.confidence_level
        else context.z
    )
    known = [
        (given.tank_id, Sample(given.n_battles, given.n_wins))
        for given in payload.given
    ]

    predictions = await recommender.recommend(known, payload.predict, z)
    predictions = filter_predictions(predictions, payload.min_prediction)
    logger.debug(
        f"Recommended {len(predictions)} of {len(payload.predict)} vehicles "
        f"from {len(known)} given"
    )

    return RecommendResponse(
        predictions=[
            PredictionResponse(tank_id=prediction.tank_id, p=prediction.p)
            for prediction in predictions
        ]
    )
