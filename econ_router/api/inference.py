"""Inference routing API endpoints.

POST /api/v1/inference                    - Route (and optionally execute) a request
GET  /api/v1/inference/metrics            - Tier usage, spend, cache and savings figures
GET  /api/v1/inference/mode               - Active economic mode and runtime flags
POST /api/v1/inference/mode               - Switch the active economic mode
GET  /api/v1/inference/health             - Per-tier availability and router health
GET  /api/v1/inference/budget             - Budget status and monthly forecast
GET  /api/v1/inference/optimizations      - Optimization history and statistics
POST /api/v1/inference/optimizations/run  - Run an optimization pass now

Routing errors are not caught here; the application's exception handlers
map them to status codes (402, 400, 422, 503, 502).
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from econ_router.routing.budget import DEFAULT_OWNER
from econ_router.routing.runtime import EconomicMode
from econ_router.service import InferenceService
from econ_router.telemetry.logging import bind_owner_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/inference", tags=["inference"])


# ---------------------------------------------------------------------------
# Dependency: the service built during application startup
# ---------------------------------------------------------------------------


def get_inference_service(request: Request) -> InferenceService:
    """Return the InferenceService stored on the application state.

    Tests either set ``app.state.service`` directly or override this
    dependency with app.dependency_overrides.
    """
    return request.app.state.service


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class InferenceRequestBody(BaseModel):
    prompt: str = Field(..., max_length=200_000)
    task_type: str = Field(default="general", min_length=1, max_length=64)
    # Validated by the router so an unknown mode is a 400, not a 422
    economic_mode: str | None = None
    project_id: str | None = Field(default=None, max_length=128)
    execute: bool = False


class InferenceResponse(BaseModel):
    request_id: str
    tier: str
    model_id: str
    latency_ms: int
    decision_latency_ms: float
    cost_estimate: float
    over_budget: bool
    reason: str
    mode: str
    cached: bool = False
    attempts: int = 1
    failed_tiers: list[str] = []
    budget_remaining: float
    output: str | None = None


class ModeRequest(BaseModel):
    mode: str


class ModeResponse(BaseModel):
    mode: str
    available_modes: list[str]
    caching_enabled: bool
    batching_enabled: bool
    demoted_tiers: list[str]
    version: int


class HealthResponse(BaseModel):
    status: str
    tiers: dict[str, Any]
    mode: str
    optimizer_running: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=InferenceResponse,
    summary="Route an inference request to an execution tier",
)
async def route_inference(
    body: InferenceRequestBody,
    request: Request,
    service: InferenceService = Depends(get_inference_service),
) -> InferenceResponse:
    """Pick a tier for the prompt and debit its estimated cost.

    With ``execute`` set, the prompt is also run on the chosen tier and the
    completion text is returned in ``output``.
    """
    owner = body.project_id or DEFAULT_OWNER
    bind_owner_context(owner)

    inference = service.build_request(
        body.prompt,
        task_type=body.task_type,
        mode=body.economic_mode,
        owner=owner,
        request_id=getattr(request.state, "request_id", None),
    )
    result = await service.infer(inference, execute=body.execute)
    decision = result.decision

    return InferenceResponse(
        request_id=decision.request_id,
        tier=decision.tier.value,
        model_id=decision.model_id,
        latency_ms=decision.expected_latency_ms,
        decision_latency_ms=decision.decision_latency_ms,
        cost_estimate=decision.estimated_cost,
        over_budget=decision.over_budget,
        reason=decision.reason.value,
        mode=decision.mode.value,
        cached=result.cached,
        attempts=result.attempts,
        failed_tiers=result.failed_tiers,
        budget_remaining=decision.budget_remaining,
        output=result.output,
    )


@router.get("/metrics", summary="Routing metrics")
async def get_routing_metrics(
    service: InferenceService = Depends(get_inference_service),
) -> dict[str, Any]:
    """Tier usage, cumulative cost, cache-hit rate, fallback rate and savings."""
    return service.metrics.summary()


def _mode_response(service: InferenceService) -> ModeResponse:
    config = service.config.get()
    return ModeResponse(
        mode=config.mode.value,
        available_modes=[mode.value for mode in EconomicMode],
        caching_enabled=config.caching_enabled,
        batching_enabled=config.batching_enabled,
        demoted_tiers=sorted(tier.value for tier in config.demoted_tiers),
        version=config.version,
    )


@router.get("/mode", response_model=ModeResponse, summary="Active economic mode")
async def get_mode(
    service: InferenceService = Depends(get_inference_service),
) -> ModeResponse:
    return _mode_response(service)


@router.post("/mode", response_model=ModeResponse, summary="Set the active economic mode")
async def set_mode(
    body: ModeRequest,
    service: InferenceService = Depends(get_inference_service),
) -> ModeResponse:
    """Switch the mode used by requests that do not name one.

    An unknown mode raises InvalidEconomicMode (HTTP 400).
    """
    previous = service.config.get().mode
    config = service.config.set_mode(body.mode)
    log.info("inference_api.mode_changed", previous=previous.value, mode=config.mode.value)
    return _mode_response(service)


@router.get("/health", response_model=HealthResponse, summary="Router and tier health")
async def get_router_health(
    service: InferenceService = Depends(get_inference_service),
) -> HealthResponse:
    """Always 200: the local tier keeps the router serving."""
    return HealthResponse(**service.health())


@router.get("/budget", summary="Budget status and monthly forecast")
async def get_budget(
    project_id: str | None = Query(default=None, max_length=128),
    service: InferenceService = Depends(get_inference_service),
) -> dict[str, Any]:
    owner = project_id or DEFAULT_OWNER
    await service.ledger.ensure_loaded(owner)
    return service.ledger.status(owner)


@router.get("/optimizations", summary="Optimization history and statistics")
async def get_optimizations(
    service: InferenceService = Depends(get_inference_service),
) -> dict[str, Any]:
    return service.optimizer.statistics()


@router.post("/optimizations/run", summary="Run an optimization pass now")
async def run_optimizations(
    service: InferenceService = Depends(get_inference_service),
) -> dict[str, Any]:
    """Analyse activity since the previous pass and auto-apply what applies."""
    run = service.optimizer.run_optimization()
    return run.to_dict()
