"""
Vehicle Recommender API

A FastAPI-based backend for the vehicle win-rate recommender.
Provides endpoints for similarity-based predictions, vehicle models,
latent factor predictions and train item ingestion.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.core.config import settings
from api.models.database import engine, init_db
from api.models.repository import SqlTrainItemSource, SqlVehicleModelStore
from api.models.schemas import ErrorResponse, HealthResponse
from api.routes import factors, recommendations, train_items, vehicles
from ml.statistics import EstimatorError
from trainer.factor_cache import create_factor_cache
from trainer.loop import create_retraining_loop

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Creates the tables, the latent factor cache and, when enabled, runs the
    retraining loop next to the request handlers.
    """
    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    app.state.factor_cache = None
    if settings.factors_enabled:
        app.state.factor_cache = create_factor_cache(settings)
        await app.state.factor_cache.start()

    app.state.trainer = None
    if settings.run_trainer:
        app.state.trainer = create_retraining_loop(
            settings,
            SqlTrainItemSource(settings.realm),
            SqlVehicleModelStore(),
            factor_cache=app.state.factor_cache,
        )
        await app.state.trainer.start()

    yield

    # Shutdown
    logger.info("Shutting down application")
    if app.state.trainer is not None:
        await app.state.trainer.stop()
    if app.state.factor_cache is not None:
        await app.state.factor_cache.stop()
        await app.state.factor_cache.store.close()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="""
Vehicle Recommender API predicts how well a player would do on vehicles they
have barely played.

## Features

* **Recommendations** - Similarity-weighted win-rate predictions
* **Vehicles** - Baseline win rates and similar vehicles
* **Latent Factors** - Predictions from the online matrix factorization model
* **Train Items** - Battle delta ingestion
    """,
    version=settings.app_version,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)
app.state.factor_cache = None
app.state.trainer = None


# =============================================================================
# Middleware
# =============================================================================

# Browsers only ever read predictions and post battle deltas
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    expose_headers=["X-Process-Time"],
)


@app.middleware("http")
async def time_requests(request: Request, call_next):
    """Log every request with its status and stamp the elapsed time on the response."""
    start_time = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - start_time
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    logger.debug(
        f"{request.method} {request.url.path} -> {response.status_code} in {elapsed * 1000:.1f}ms"
    )
    return response


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail, status_code=status_code).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Wrap route errors (unknown vehicle, disabled factors) into ErrorResponse."""
    if isinstance(exc.detail, str):
        response = error_response(exc.status_code, exc.detail)
    else:
        response = error_response(exc.status_code, "Error", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Reject malformed tallies and train items.

    Each error is reported as ``field.path: message``; the rejected fields
    are logged so that a misbehaving crawler shows up in the logs.
    """
    errors = exc.errors()
    fields = [".".join(str(part) for part in error["loc"]) for error in errors]
    logger.warning(
        f"Rejected {request.method} {request.url.path}: {len(errors)} invalid field(s) "
        f"{', '.join(fields)}"
    )
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation Error",
        "; ".join(f"{field}: {error['msg']}" for field, error in zip(fields, errors)),
    )


@app.exception_handler(EstimatorError)
async def estimator_exception_handler(request: Request, exc: EstimatorError) -> JSONResponse:
    """A tally the win-rate estimator cannot score."""
    logger.warning(f"Estimator rejected {request.url.path}: {exc}")
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid sample", str(exc))


@app.exception_handler(SQLAlchemyError)
@app.exception_handler(RedisError)
async def storage_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """The model store or the factor store is down; clients may retry."""
    logger.error(f"Storage error on {request.url.path}: {type(exc).__name__}: {exc}")
    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Storage unavailable")


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Anything else is a bug; only non-production responses carry the message."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    detail = None if settings.environment == "production" else str(exc)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", detail)


# =============================================================================
# Health Check Endpoint
# =============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
    description="Check if the API is running and database is connected.",
)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Returns the current status of the API, the database connection and
    the retraining loop. Used by load balancers and monitoring systems.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        database = "unavailable"

    trainer = getattr(request.app.state, "trainer", None)
    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        version=settings.app_version,
        database=database,
        trainer="running" if trainer is not None and trainer.is_running else "disabled",
    )


# =============================================================================
# API Routes
# =============================================================================

# Include all routers under /api/v1 prefix
app.include_router(
    recommendations.router,
    prefix=settings.api_v1_prefix,
)

app.include_router(
    vehicles.router,
    prefix=settings.api_v1_prefix,
)

app.include_router(
    factors.router,
    prefix=settings.api_v1_prefix,
)

app.include_router(
    train_items.router,
    prefix=settings.api_v1_prefix,
)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get(
    "/",
    tags=["Root"],
    summary="API Information",
    description="Get basic API information and links to documentation.",
)
async def root() -> dict[str, Any]:
    """
    Root endpoint with API information.

    Provides links to documentation and basic API info.
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "documentation": {
            "openapi": "/api/openapi.json",
            "swagger": "/api/docs",
            "redoc": "/api/redoc",
        },
        "endpoints": {
            "recommend": f"{settings.api_v1_prefix}/recommend",
            "vehicles": f"{settings.api_v1_prefix}/vehicles",
            "factors": f"{settings.api_v1_prefix}/factors",
            "train_items": f"{settings.api_v1_prefix}/train-items",
            "health": "/health",
        },
    }


# =============================================================================
# Development Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
