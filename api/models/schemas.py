"""
Pydantic schemas for the Vehicle Recommender API.
"""

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from ml.statistics import ConfidenceLevel


# =============================================================================
# Train Item Schemas
# =============================================================================

class TrainItemCreate(BaseModel):
    """
    Battle delta submitted by the crawler.

    Accepts both the full field names and the short stored aliases
    (``rlm``, ``aid``, ``tid``, ``lbts``, ``nb``, ``nw``).
    """
    model_config = ConfigDict(populate_by_name=True)

    realm: Optional[str] = Field(None, validation_alias=AliasChoices("realm", "rlm"))
    account_id: int = Field(..., validation_alias=AliasChoices("account_id", "aid"))
    tank_id: int = Field(..., validation_alias=AliasChoices("tank_id", "tid"))
    last_battle_time: datetime = Field(
        ...,
        validation_alias=AliasChoices("last_battle_time", "lbts", "timestamp", "ts"),
    )
    n_battles: int = Field(1, ge=0, validation_alias=AliasChoices("n_battles", "nb", "b"))
    n_wins: int = Field(0, ge=0, validation_alias=AliasChoices("n_wins", "nw", "w"))

    @model_validator(mode="after")
    def check_wins(self):
        if self.n_wins > self.n_battles:
            raise ValueError("n_wins must not exceed n_battles")
        return self


class TrainItemsCreated(BaseModel):
    """Result of a train item submission."""
    n_items: int
    ids: list[int]


# =============================================================================
# Recommendation Schemas
# =============================================================================

class GivenVehicle(BaseModel):
    """Tally of a vehicle the account has played."""
    tank_id: int
    n_battles: int = Field(..., gt=0)
    n_wins: int = Field(..., ge=0)

    @model_validator(mode="after")
    def check_wins(self):
        if self.n_wins > self.n_battles:
            raise ValueError("n_wins must not exceed n_battles")
        return self


class RecommendRequest(BaseModel):
    """Request for similarity-based predictions."""
    given: list[GivenVehicle] = Field(default_factory=list)
    predict: list[int] = Field(default_factory=list)
    min_prediction: float = Field(0.0, description="Drop predictions below this win rate")
    confidence_level: Optional[str] = Field(
        None,
        description="Confidence level name, e.g. Z90; the server default if omitted",
    )

    @model_validator(mode="after")
    def check_confidence_level(self):
        if self.confidence_level is not None and self.confidence_level.upper() not in ConfidenceLevel.__members__:
            raise ValueError(f"unknown confidence level: {self.confidence_level}")
        return self


class PredictionResponse(BaseModel):
    """Predicted win rate on a vehicle."""
    model_config = ConfigDict(from_attributes=True)

    tank_id: int
    p: float


class RecommendResponse(BaseModel):
    """Predictions sorted by descending win rate."""
    predictions: list[PredictionResponse]


class FactorPredictRequest(BaseModel):
    """Request for latent factor predictions."""
    account_id: int
    predict: list[int] = Field(default_factory=list)
    min_prediction: float = 0.0


# =============================================================================
# Vehicle Schemas
# =============================================================================

class SimilarVehicle(BaseModel):
    """Neighbour of a vehicle in the similarity graph."""
    tank_id: int
    similarity: float = Field(..., gt=0.0, le=1.0 + 1e-9)


class VehicleResponse(BaseModel):
    """Stored model of a vehicle."""
    tank_id: int
    victory_ratio: float = Field(..., ge=0.0, le=1.0)
    similar_vehicles: list[SimilarVehicle]


# =============================================================================
# Common Schemas
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    database: str = "connected"
    trainer: str = "disabled"
