"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize the database engine and ledger table (durable ledger only)
4. Build the InferenceService and start its background tasks
5. Register middleware (CORS, metrics, request id) and routers

Shutdown order:
1. Stop the InferenceService (optimizer, probes, ledger writer, alerts, cache)
2. Close the DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from econ_router.api.router import api_v1_router, public_router
from econ_router.config import get_settings
from econ_router.database import close_db, create_tables, get_session_factory, init_db
from econ_router.middleware.prometheus import PrometheusMiddleware, get_metrics
from econ_router.routing.errors import (
    BudgetExceeded,
    ConfigurationError,
    DispatchError,
    EstimationError,
    InvalidEconomicMode,
    RouterError,
    TierUnavailable,
)
from econ_router.routing.store import LedgerStore, SqlLedgerStore
from econ_router.service import InferenceService
from econ_router.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        ledger_backend=settings.ledger_backend,
        mode=settings.default_economic_mode,
    )

    store: LedgerStore | None = None
    if settings.ledger_backend == "database":
        init_db(settings)
        await create_tables()
        store = SqlLedgerStore(get_session_factory())

    service = InferenceService.from_settings(settings, store=store)
    await service.start()
    app.state.service = service

    log.info("app.ready")
    yield

    await service.stop()
    await close_db()
    log.info("app.shutdown")


def _error_body(exc: RouterError, **extra: Any) -> dict[str, Any]:
    return {"detail": str(exc), "error": type(exc).__name__, **extra}


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="Economic Inference Router",
        description=(
            "Budget-aware routing of inference requests across local, elastic "
            "and premium execution tiers."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    # In dev mode, allow all origins for easier development
    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    # Prometheus metrics
    app.add_middleware(PrometheusMiddleware)

    # Unique request ID for log correlation and ledger entries
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)

    # Prometheus metrics endpoint
    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Any:
        """Prometheus metrics endpoint."""
        return get_metrics()

    # ------------------------------------------------------------------ #
    # Routing error handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(BudgetExceeded)
    async def budget_exceeded_handler(request: Request, exc: BudgetExceeded) -> JSONResponse:
        log.warning(
            "app.budget_exceeded",
            path=request.url.path,
            owner=exc.owner,
            mode=exc.mode,
            cheapest_cost=exc.cheapest_cost,
            remaining=exc.remaining,
        )
        return JSONResponse(
            status_code=402,
            content=_error_body(
                exc,
                mode=exc.mode,
                owner=exc.owner,
                cheapest_cost=exc.cheapest_cost,
                remaining=exc.remaining,
            ),
        )

    @app.exception_handler(InvalidEconomicMode)
    async def invalid_mode_handler(request: Request, exc: InvalidEconomicMode) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=_error_body(exc, valid_modes=exc.valid),
        )

    @app.exception_handler(EstimationError)
    async def estimation_error_handler(request: Request, exc: EstimationError) -> JSONResponse:
        return JSONResponse(status_code=422, content=_error_body(exc))

    @app.exception_handler(TierUnavailable)
    async def tier_unavailable_handler(request: Request, exc: TierUnavailable) -> JSONResponse:
        log.warning("app.tier_unavailable", path=request.url.path, tiers=exc.tiers)
        return JSONResponse(
            status_code=503,
            content=_error_body(exc, tiers=exc.tiers),
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
        log.error("app.dispatch_failed", path=request.url.path, tiers=exc.tiers)
        return JSONResponse(status_code=502, content=_error_body(exc, tiers=exc.tiers))

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        log.error("app.configuration_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content=_error_body(exc))

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
