"""Budget-aware routing across execution tiers.

This package selects an execution tier (LOCAL/ELASTIC/PREMIUM) for every
inference request based on:
- Per-tier cost estimates from token counts
- Remaining daily and monthly budget of the request's owner
- The requested (or active) economic mode
- Cached tier availability

The OptimizationMonitor runs beside the router, analysing spend and
publishing runtime config changes (caching, batching, tier demotion).
"""

from __future__ import annotations

from econ_router.routing.alerts import BudgetNotifier
from econ_router.routing.budget import BudgetAlert, BudgetLedger, BudgetSnapshot, PeriodKind
from econ_router.routing.dispatch import InferenceResult, TierDispatcher
from econ_router.routing.errors import (
    BudgetExceeded,
    ConfigurationError,
    DispatchError,
    EstimationError,
    InvalidEconomicMode,
    OptimizationCycleError,
    RouterError,
    TierUnavailable,
)
from econ_router.routing.estimator import CostEstimator, HeuristicTokenCounter
from econ_router.routing.metrics import RoutingMetrics
from econ_router.routing.optimizer import OptimizationMonitor, OptimizationRecommendation
from econ_router.routing.router import InferenceRequest, RoutingDecision, RoutingReason, TierRouter
from econ_router.routing.runtime import EconomicMode, RouterConfig, RuntimeConfigHolder
from econ_router.routing.tiers import Tier, TierId, TierRegistry

__all__ = [
    "BudgetAlert",
    "BudgetExceeded",
    "BudgetLedger",
    "BudgetNotifier",
    "BudgetSnapshot",
    "ConfigurationError",
    "CostEstimator",
    "DispatchError",
    "EconomicMode",
    "EstimationError",
    "HeuristicTokenCounter",
    "InferenceRequest",
    "InferenceResult",
    "InvalidEconomicMode",
    "OptimizationCycleError",
    "OptimizationMonitor",
    "OptimizationRecommendation",
    "PeriodKind",
    "RouterConfig",
    "RouterError",
    "RoutingDecision",
    "RoutingMetrics",
    "RoutingReason",
    "RuntimeConfigHolder",
    "Tier",
    "TierDispatcher",
    "TierId",
    "TierRegistry",
    "TierRouter",
]
