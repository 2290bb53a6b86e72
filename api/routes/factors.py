"""
Latent factor routes for the Vehicle Recommender API.
"""

from fastapi import APIRouter

from api.core.dependencies import FactorCacheDep
from api.models.schemas import (
    ErrorResponse,
    FactorPredictRequest,
    PredictionResponse,
    RecommendResponse,
)
from ml.recommendations import filter_predictions

router = APIRouter(prefix="/factors", tags=["Latent Factors"])


@router.post(
    "/predict",
    response_model=RecommendResponse,
    responses={
        200: {"description": "Predictions, possibly empty"},
        503: {"description": "Latent factor model disabled", "model": ErrorResponse},
    },
    summary="Predict win rates from latent factors",
)
async def predict(payload: FactorPredictRequest, cache: FactorCacheDep) -> RecommendResponse:
    """Predict from the cached account and vehicle factors."""
    predictions = await cache.predict(payload.account_id, payload.predict)
    predictions = filter_predictions(predictions, payload.min_prediction)
    return RecommendResponse(
        predictions=[
            PredictionResponse(tank_id=prediction.tank_id, p=prediction.p)
            for prediction in predictions
        ]
    )
