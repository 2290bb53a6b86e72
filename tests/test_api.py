"""
API Backend Tests

Tests for FastAPI endpoints, schemas, and configuration.
"""

import logging
from datetime import timedelta

import pytest


def vr(n_battles, n_wins, z=1.645):
    from ml.statistics import victory_ratio

    return victory_ratio(n_battles, n_wins, z)


class FakeFactorCache:
    """Factor cache stand-in with canned predictions."""

    def __init__(self, predictions):
        self.predictions = predictions
        self.calls = []

    async def predict(self, account_id, tank_ids):
        self.calls.append((account_id, list(tank_ids)))
        return [p for p in self.predictions if p.tank_id in tank_ids]


# =============================================================================
# Configuration
# =============================================================================

def test_api_imports():
    """Test that all API modules can be imported without errors."""
    from api.main import app
    from api.core.config import Settings
    from api.models.schemas import RecommendRequest, TrainItemCreate, VehicleResponse

    assert app is not None
    assert Settings is not None


def test_settings_defaults():
    """Test that settings have sensible defaults."""
    from api.core.config import Settings
    from ml.statistics import ConfidenceLevel

    settings = Settings()
    assert settings.app_name == "Vehicle Recommender API"
    assert settings.environment in ["development", "staging", "production"]
    assert settings.confidence_level is ConfidenceLevel.Z90
    assert settings.confidence_z == 1.645
    assert settings.train_period == timedelta(days=2)
    assert settings.account_ttl == timedelta(days=61)


def test_settings_confidence_level():
    """Test that a confidence level is accepted by name or z-value."""
    from api.core.config import Settings
    from ml.statistics import ConfidenceLevel
    from pydantic import ValidationError

    assert Settings(confidence_level="z99").confidence_level is ConfidenceLevel.Z99
    assert Settings(confidence_level="1.96").confidence_level is ConfidenceLevel.Z95

    with pytest.raises(ValidationError):
        Settings(confidence_level="sure")


def test_settings_rejects_non_positive_values():
    """Test that durations and sizes must be positive."""
    from api.core.config import Settings
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        Settings(train_period=timedelta(0))
    with pytest.raises(ValidationError):
        Settings(similarity_concurrency=0)


def test_settings_origins():
    """Test that comma-separated origins are split."""
    from api.core.config import Settings

    settings = Settings(allowed_origins="http://a.example, http://b.example")
    assert settings.allowed_origins == ["http://a.example", "http://b.example"]


# =============================================================================
# Schemas
# =============================================================================

def test_train_item_aliases():
    """Test that short field names are accepted."""
    from api.models.schemas import TrainItemCreate

    item = TrainItemCreate.model_validate(
        {"rlm": "eu", "aid": 1, "tid": 2, "lbts": "2024-06-01T11:00:00Z", "nb": 3, "nw": 1}
    )
    assert (item.realm, item.account_id, item.tank_id) == ("eu", 1, 2)
    assert (item.n_battles, item.n_wins) == (3, 1)


def test_train_item_defaults():
    """Test that a delta defaults to one lost battle."""
    from api.models.schemas import TrainItemCreate

    item = TrainItemCreate(account_id=1, tank_id=2, last_battle_time="2024-06-01T11:00:00Z")
    assert item.realm is None
    assert (item.n_battles, item.n_wins) == (1, 0)


def test_given_vehicle_validation():
    """Test that impossible tallies are rejected."""
    from api.models.schemas import GivenVehicle
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        GivenVehicle(tank_id=1, n_battles=0, n_wins=0)
    with pytest.raises(ValidationError):
        GivenVehicle(tank_id=1, n_battles=2, n_wins=3)


# =============================================================================
# Endpoints
# =============================================================================

class TestEndpoints:
    """Integration tests for API endpoints."""

    @pytest.fixture
    def client(self, vehicle_store, source):
        """Create a test client over in-memory stores."""
        from fastapi.testclient import TestClient

        from api.core.dependencies import get_train_item_source, get_vehicle_store
        from api.main import app

        app.dependency_overrides[get_vehicle_store] = lambda: vehicle_store
        app.dependency_overrides[get_train_item_source] = lambda: source
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_health_endpoint(self, client):
        """Test health check endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["trainer"] == "disabled"

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Vehicle Recommender API"
        assert data["endpoints"]["recommend"] == "/api/v1/recommend"

    def test_openapi_schema(self, client):
        """Test that the OpenAPI schema lists the routes."""
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/recommend" in response.json()["paths"]

    # === Recommendations ===

    def test_recommend(self, client):
        """Test a prediction from two given vehicles."""
        response = client.post(
            "/api/v1/recommend",
            json={
                "given": [
                    {"tank_id": 1, "n_battles": 10, "n_wins": 5},
                    {"tank_id": 3, "n_battles": 2, "n_wins": 2},
                ],
                "predict": [1, 2, 3],
            },
        )

        assert response.status_code == 200
        [prediction] = response.json()["predictions"]
        expected = (0.5 * (vr(10, 5) - 0.5) + 1.0 * (vr(2, 2) - 0.4)) / 1.5 + 0.6
        assert prediction["tank_id"] == 2
        assert prediction["p"] == pytest.approx(expected)

    def test_recommend_sorted(self, client):
        """Test that predictions come back best first."""
        response = client.post(
            "/api/v1/recommend",
            json={"given": [{"tank_id": 2, "n_battles": 10, "n_wins": 8}], "predict": [3, 1]},
        )

        assert [p["tank_id"] for p in response.json()["predictions"]] == [1, 3]

    def test_recommend_empty(self, client):
        """Test that an empty request yields no predictions."""
        response = client.post("/api/v1/recommend", json={})

        assert response.status_code == 200
        assert response.json() == {"predictions": []}

    def test_recommend_min_prediction(self, client):
        """Test that low predictions are filtered out."""
        response = client.post(
            "/api/v1/recommend",
            json={
                "given": [{"tank_id": 2, "n_battles": 10, "n_wins": 8}],
                "predict": [3, 1],
                "min_prediction": vr(10, 8) - 0.6 + 0.45,
            },
        )

        assert [p["tank_id"] for p in response.json()["predictions"]] == [1]

    def test_recommend_confidence_level(self, client):
        """Test that the request can pick its own confidence level."""
        response = client.post(
            "/api/v1/recommend",
            json={
                "given": [{"tank_id": 3, "n_battles": 2, "n_wins": 2}],
                "predict": [2],
                "confidence_level": "Z99",
            },
        )

        [prediction] = response.json()["predictions"]
        assert prediction["p"] == pytest.approx(vr(2, 2, 2.576) - 0.4 + 0.6)

    @pytest.mark.parametrize("given", [
        {"tank_id": 1, "n_battles": 2, "n_wins": 3},
        {"tank_id": 1, "n_battles": 0, "n_wins": 0},
        {"tank_id": 1, "n_battles": 1},
    ])
    def test_recommend_invalid_given(self, client, given):
        """Test that malformed tallies are rejected."""
        response = client.post("/api/v1/recommend", json={"given": [given], "predict": [2]})

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "Validation Error"
        assert data["status_code"] == 422

    def test_recommend_unknown_confidence_level(self, client):
        """Test that an unknown confidence level is rejected."""
        response = client.post(
            "/api/v1/recommend",
            json={"given": [], "predict": [], "confidence_level": "Z42"},
        )

        assert response.status_code == 422
        assert "unknown confidence level" in response.json()["detail"]

    # === Vehicles ===

    def test_get_vehicle(self, client):
        """Test that the stored model is returned with its neighbours."""
        response = client.get("/api/v1/vehicles/2")

        assert response.status_code == 200
        data = response.json()
        assert data["victory_ratio"] == 0.6
        assert data["similar_vehicles"] == [
            {"tank_id": 3, "similarity": 1.0},
            {"tank_id": 1, "similarity": 0.5},
        ]

    def test_get_vehicle_limit(self, client):
        """Test that the neighbour list can be truncated."""
        response = client.get("/api/v1/vehicles/2", params={"limit": 1})

        assert [v["tank_id"] for v in response.json()["similar_vehicles"]] == [3]

    def test_get_vehicle_not_found(self, client):
        """Test 404 for a vehicle without a model."""
        response = client.get("/api/v1/vehicles/404")

        assert response.status_code == 404
        assert response.json()["error"] == "Vehicle model not found"

    # === Latent Factors ===

    def test_factors_disabled(self, client):
        """Test that factor predictions are unavailable without a cache."""
        response = client.post("/api/v1/factors/predict", json={"account_id": 1, "predict": [1]})

        assert response.status_code == 503

    def test_factors_predict(self, client):
        """Test factor predictions with a configured cache."""
        from api.core.dependencies import get_factor_cache
        from api.main import app
        from ml.recommendations import Prediction

        cache = FakeFactorCache([Prediction(2, 0.7), Prediction(1, 0.4)])
        app.dependency_overrides[get_factor_cache] = lambda: cache

        response = client.post(
            "/api/v1/factors/predict",
            json={"account_id": 5, "predict": [1, 2, 3], "min_prediction": 0.5},
        )

        assert response.status_code == 200
        assert response.json() == {"predictions": [{"tank_id": 2, "p": 0.7}]}
        assert cache.calls == [(5, [1, 2, 3])]

    # === Errors ===

    def test_storage_error(self, client, vehicle_store, monkeypatch, caplog):
        """Test that a database outage is reported as a retryable 503."""
        from sqlalchemy.exc import OperationalError

        async def get_many(tank_ids):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        monkeypatch.setattr(vehicle_store, "get_many", get_many)

        with caplog.at_level(logging.ERROR, logger="api.main"):
            response = client.get("/api/v1/vehicles/2")

        assert response.status_code == 503
        assert response.json() == {
            "error": "Storage unavailable",
            "detail": None,
            "status_code": 503,
        }
        assert "Storage error on /api/v1/vehicles/2" in caplog.text

    def test_validation_error_logged(self, client, caplog):
        """Test that rejected fields are logged by their dotted path."""
        with caplog.at_level(logging.WARNING, logger="api.main"):
            response = client.post(
                "/api/v1/recommend",
                json={"given": [{"tank_id": 1, "n_battles": 1}], "predict": [2]},
            )

        assert response.status_code == 422
        assert "body.given.0.n_wins" in response.json()["detail"]
        assert "Rejected POST /api/v1/recommend: 1 invalid field(s) body.given.0.n_wins" in caplog.text

    def test_process_time_header(self, client):
        """Test that responses carry their processing time."""
        response = client.get("/health")

        assert float(response.headers["X-Process-Time"]) >= 0.0

    # === Train Items ===

    def test_create_train_items(self, client, source):
        """Test that items are appended with the default realm."""
        response = client.post(
            "/api/v1/train-items",
            json=[
                {"aid": 1, "tid": 2, "ts": "2024-06-01T11:00:00Z", "nb": 3, "nw": 2},
                {"account_id": 2, "tank_id": 2, "last_battle_time": "2024-06-01T11:30:00Z", "realm": "eu"},
            ],
        )

        assert response.status_code == 201
        assert response.json() == {"n_items": 2, "ids": [1, 2]}
        first, second = source.items
        assert (first.realm, first.account_id, first.n_battles, first.n_wins) == ("ru", 1, 3, 2)
        assert (second.realm, second.n_battles) == ("eu", 1)

    def test_create_train_items_invalid(self, client, source):
        """Test that a delta with more wins than battles is rejected."""
        response = client.post(
            "/api/v1/train-items",
            json=[{"aid": 1, "tid": 2, "ts": "2024-06-01T11:00:00Z", "nb": 1, "nw": 2}],
        )

        assert response.status_code == 422
        assert source.items == []


# =============================================================================
# Lifespan
# =============================================================================

class TestLifespan:
    """Tests for startup and shutdown of the factor cache."""

    def test_factor_flusher_lifecycle(self, factor_store, monkeypatch):
        """Test that the flusher runs while serving and flushes and closes on shutdown."""
        from fastapi.testclient import TestClient

        from api.main import app, settings
        from trainer.factor_cache import FactorConfig, LatentFactorCache

        cache = LatentFactorCache(factor_store, FactorConfig(n_factors=4))
        monkeypatch.setattr(settings, "factors_enabled", True)
        monkeypatch.setattr("api.main.create_factor_cache", lambda _: cache)

        try:
            with TestClient(app) as client:
                assert app.state.factor_cache is cache
                assert cache._flush_task is not None

                response = client.post(
                    "/api/v1/factors/predict",
                    json={"account_id": 5, "predict": [1]},
                )
                assert response.status_code == 200
        finally:
            app.state.factor_cache = None

        assert cache._flush_task is None
        assert 5 in cache.accounts
        assert factor_store.closed
