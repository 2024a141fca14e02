"""Telemetry package for observability.

This package contains:
- Structured logging with request correlation
- Prometheus metrics (in econ_router/middleware/prometheus.py)
"""

from __future__ import annotations

from econ_router.telemetry.logging import (
    RequestIdMiddleware,
    bind_owner_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_owner_context",
    "clear_context",
    "configure_logging",
]
