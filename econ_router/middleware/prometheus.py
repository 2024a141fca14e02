"""Prometheus metrics endpoint and instrumentation.

Exports metrics in Prometheus exposition format for scraping by Prometheus server.
The in-process RoutingMetrics collector feeds these counters, so the JSON
metrics endpoint and the scrape endpoint report the same events.

Metrics exported:
- http_requests_total: Counter of HTTP requests by method, endpoint, status
- http_request_duration_seconds: Histogram of HTTP request latencies
- routing_decisions_total: Counter of decisions by tier, mode, reason
- routing_rejections_total: Counter of refused requests by error
- routing_decision_seconds: Histogram of decision latency
- routing_cost_usd_total: Estimated USD routed to each tier
- llm_requests_total / llm_request_duration_seconds: Tier dispatch outcomes
- budget_remaining_usd: Gauge of remaining budget per owner and period
- budget_alerts_total: Counter of threshold alerts by level and period
- tier_available: Gauge (1/0) of cached tier availability
- cache_lookups_total: Response cache hits and misses
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog
from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

log = structlog.get_logger(__name__)


# Create custom registry to avoid conflicts with other prometheus exporters
REGISTRY = CollectorRegistry(auto_describe=True)


# ------------------------------------------------------------------ #
# HTTP Metrics
# ------------------------------------------------------------------ #

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

active_connections = Gauge(
    "active_connections",
    "Number of active HTTP connections",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Routing Metrics
# ------------------------------------------------------------------ #

routing_decisions_total = Counter(
    "routing_decisions_total",
    "Routing decisions made",
    ["tier", "mode", "reason"],
    registry=REGISTRY,
)

routing_rejections_total = Counter(
    "routing_rejections_total",
    "Requests refused by the router",
    ["error"],
    registry=REGISTRY,
)

routing_decision_seconds = Histogram(
    "routing_decision_seconds",
    "Time spent choosing a tier",
    buckets=[0.0001, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05],
    registry=REGISTRY,
)

routing_cost_usd_total = Counter(
    "routing_cost_usd_total",
    "Estimated USD routed to each tier",
    ["tier"],
    registry=REGISTRY,
)

cache_lookups_total = Counter(
    "cache_lookups_total",
    "Response cache lookups",
    ["result"],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# LLM Metrics
# ------------------------------------------------------------------ #

llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM requests dispatched to a tier",
    ["tier", "status"],
    registry=REGISTRY,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM request latency in seconds",
    ["tier"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Budget & Tier Metrics
# ------------------------------------------------------------------ #

budget_remaining_usd = Gauge(
    "budget_remaining_usd",
    "Remaining budget in USD",
    ["owner", "period"],
    registry=REGISTRY,
)

budget_alerts_total = Counter(
    "budget_alerts_total",
    "Budget threshold alerts raised",
    ["level", "period"],
    registry=REGISTRY,
)

tier_available = Gauge(
    "tier_available",
    "Cached tier availability (1 = available)",
    ["tier"],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Instrumentation Functions
# ------------------------------------------------------------------ #


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics.

    Args:
        method: HTTP method
        endpoint: Request path
        status_code: Response status code
        duration_seconds: Request duration in seconds
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status_code),
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
    ).observe(duration_seconds)


def record_routing_decision(
    tier: str,
    mode: str,
    reason: str,
    cost_usd: float,
    decision_seconds: float,
) -> None:
    """Record one routing decision.

    Args:
        tier: Tier chosen
        mode: Economic mode in effect
        reason: Routing reason code
        cost_usd: Estimated cost debited
        decision_seconds: Time spent deciding
    """
    routing_decisions_total.labels(tier=tier, mode=mode, reason=reason).inc()
    routing_decision_seconds.observe(decision_seconds)
    if cost_usd > 0:
        routing_cost_usd_total.labels(tier=tier).inc(cost_usd)


def record_routing_rejection(error: str) -> None:
    routing_rejections_total.labels(error=error).inc()


def record_cache_lookup(hit: bool) -> None:
    cache_lookups_total.labels(result="hit" if hit else "miss").inc()


def record_llm_request(tier: str, status: str, duration_seconds: float) -> None:
    """Record a dispatch attempt against a tier.

    Args:
        tier: Tier the request was sent to
        status: success or error
        duration_seconds: Request duration in seconds
    """
    llm_requests_total.labels(tier=tier, status=status).inc()
    llm_request_duration_seconds.labels(tier=tier).observe(duration_seconds)


def update_budget_remaining(owner: str, period: str, remaining: float) -> None:
    budget_remaining_usd.labels(owner=owner, period=period).set(remaining)


def clear_budget_remaining(owner: str) -> None:
    for period in ("daily", "monthly"):
        try:
            budget_remaining_usd.remove(owner, period)
        except KeyError:
            pass


def record_budget_alert(level: str, period: str) -> None:
    budget_alerts_total.labels(level=level, period=period).inc()


def update_tier_availability(tier: str, available: bool) -> None:
    tier_available.labels(tier=tier).set(1 if available else 0)


# ------------------------------------------------------------------ #
# Middleware
# ------------------------------------------------------------------ #


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics for Prometheus endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        active_connections.inc()
        start_time = time.time()
        try:
            response = await call_next(request)
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception:
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=500,
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            active_connections.dec()


# ------------------------------------------------------------------ #
# Metrics Endpoint
# ------------------------------------------------------------------ #


def get_metrics() -> Response:
    """Generate Prometheus metrics in exposition format.

    Returns:
        Response with text/plain content type
    """
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
        status_code=200,
    )
