"""Health check endpoints.

/health/live   - Liveness probe: is the process up?
/health/ready  - Readiness probe: is the routing service wired?

These are public endpoints. Per-tier availability lives under
/api/v1/inference/health.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Request

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(request: Request) -> dict:
    """Readiness probe - the routing service has been built by the lifespan."""
    service = getattr(request.app.state, "service", None)
    return {
        "status": "ready" if service is not None else "not_ready",
        "ledger_backend": service.settings.ledger_backend if service is not None else None,
        "timestamp": datetime.now(UTC).isoformat(),
    }
