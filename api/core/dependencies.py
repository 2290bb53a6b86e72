"""
Request dependencies for the Vehicle Recommender API.

Everything a handler needs is resolved here and passed in explicitly, so
handlers never reach for module-level state.
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from api.core.config import Settings, get_settings
from api.models.repository import SqlTrainItemSource, SqlVehicleModelStore
from ml.recommendations import Recommender, VehicleModelStore, create_recommender
from ml.statistics import ConfidenceLevel
from trainer.factor_cache import LatentFactorCache


@dataclass(frozen=True)
class RequestContext:
    """Per-request estimation parameters."""
    realm: str
    confidence_level: ConfidenceLevel

    @property
    def z(self) -> float:
        return self.confidence_level.z_value


def get_context(settings: Annotated[Settings, Depends(get_settings)]) -> RequestContext:
    return RequestContext(realm=settings.realm, confidence_level=settings.confidence_level)


def get_vehicle_store() -> VehicleModelStore:
    return SqlVehicleModelStore()


def get_recommender(
    store: Annotated[VehicleModelStore, Depends(get_vehicle_store)],
) -> Recommender:
    return create_recommender(store)


def get_train_item_source(
    context: Annotated[RequestContext, Depends(get_context)],
) -> SqlTrainItemSource:
    return SqlTrainItemSource(context.realm)


def get_factor_cache(request: Request) -> LatentFactorCache:
    """Latent factor cache created at startup, 503 when the model is disabled."""
    cache = getattr(request.app.state, "factor_cache", None)
    if cache is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Latent factor model is disabled",
        )
    return cache


Context = Annotated[RequestContext, Depends(get_context)]
VehicleStore = Annotated[VehicleModelStore, Depends(get_vehicle_store)]
RecommenderDep = Annotated[Recommender, Depends(get_recommender)]
TrainItemSourceDep = Annotated[SqlTrainItemSource, Depends(get_train_item_source)]
FactorCacheDep = Annotated[LatentFactorCache, Depends(get_factor_cache)]
