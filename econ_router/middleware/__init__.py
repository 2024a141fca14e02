"""Middleware package for request processing.

This package contains:
- PrometheusMiddleware: Prometheus metrics export, plus the counters that
  routing and dispatch code increments directly
"""

from __future__ import annotations

from econ_router.middleware.prometheus import (
    PrometheusMiddleware,
    get_metrics,
    record_budget_alert,
    record_cache_lookup,
    record_http_request,
    record_llm_request,
    record_routing_decision,
    record_routing_rejection,
    update_budget_remaining,
    update_tier_availability,
)

__all__ = [
    "PrometheusMiddleware",
    "get_metrics",
    "record_budget_alert",
    "record_cache_lookup",
    "record_http_request",
    "record_llm_request",
    "record_routing_decision",
    "record_routing_rejection",
    "update_budget_remaining",
    "update_tier_availability",
]
