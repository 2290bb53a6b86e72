"""
Vehicle routes for the Vehicle Recommender API.

Exposes the stored baseline and similar vehicles of a tank.
"""

from fastapi import APIRouter, HTTPException, Query, status

from api.core.dependencies import VehicleStore
from api.models.schemas import ErrorResponse, SimilarVehicle, VehicleResponse

router = APIRouter(prefix="/vehicles", tags=["Vehicles"])


@router.get(
    "/{tank_id}",
    response_model=VehicleResponse,
    responses={
        200: {"description": "Vehicle model"},
        404: {"description": "No model for this vehicle", "model": ErrorResponse},
    },
    summary="Get a vehicle model",
    description="Get the baseline win rate and the most similar vehicles of a tank.",
)
async def get_vehicle(
    tank_id: int,
    store: VehicleStore,
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of similar vehicles"),
) -> VehicleResponse:
    """Get the stored model of a vehicle, neighbours sorted by similarity."""
    model = await store.get(tank_id)
    if model is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Vehicle model not found",
        )

    similar = sorted(model.similar, key=lambda pair: pair[1], reverse=True)[:limit]
    return VehicleResponse(
        tank_id=model.tank_id,
        victory_ratio=model.victory_ratio,
        similar_vehicles=[
            SimilarVehicle(tank_id=other_id, similarity=similarity)
            for other_id, similarity in similar
        ],
    )
