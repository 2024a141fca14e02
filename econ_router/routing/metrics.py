"""Metrics collection for routing decisions and spend.

RoutingMetrics keeps the bounded decision history and the running totals
that back the metrics endpoint and feed the optimization monitor:

- Tier usage counts and estimated cost per tier
- Cache hits and misses
- Fallbacks (dispatch moved a request to another tier after a failure)
- Savings against routing everything to the premium tier
- Rejections by error type

Every recorded event is mirrored to the Prometheus counters.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from econ_router.middleware.prometheus import (
    record_cache_lookup,
    record_routing_decision,
    record_routing_rejection,
)

if TYPE_CHECKING:
    from econ_router.routing.router import RoutingDecision

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MetricsTotals:
    """Cumulative counters at one instant.

    The optimizer subtracts two of these to get activity between passes,
    which stays exact however many decisions the bounded history has dropped.
    """

    requests: int = 0
    total_cost: float = 0.0
    cost_by_tier: dict[str, float] = field(default_factory=dict)
    requests_by_tier: dict[str, int] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def minus(self, earlier: MetricsTotals) -> MetricsTotals:
        tiers = set(self.cost_by_tier) | set(earlier.cost_by_tier)
        return MetricsTotals(
            requests=self.requests - earlier.requests,
            total_cost=round(self.total_cost - earlier.total_cost, 9),
            cost_by_tier={
                tier: round(
                    self.cost_by_tier.get(tier, 0.0) - earlier.cost_by_tier.get(tier, 0.0), 9
                )
                for tier in tiers
            },
            requests_by_tier={
                tier: self.requests_by_tier.get(tier, 0) - earlier.requests_by_tier.get(tier, 0)
                for tier in tiers
            },
            taken_at=self.taken_at,
        )

    @property
    def average_cost(self) -> float:
        return self.total_cost / self.requests if self.requests else 0.0


class RoutingMetrics:
    """Collects and aggregates routing metrics for observability.

    In-memory and process-local. Decision history is bounded; totals are not.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._decisions: deque[RoutingDecision] = deque(maxlen=history_size)
        self._tier_counts: Counter[str] = Counter()
        self._cost_by_tier: dict[str, float] = {}
        self._total_cost = 0.0
        self._premium_baseline = 0.0
        self._requests = 0
        self._over_budget = 0
        self._fallbacks = 0
        self._cache_hits = 0
        self._cache_misses = 0
        self._rejections: Counter[str] = Counter()

        log.info("routing_metrics.initialized", history_size=history_size)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, decision: RoutingDecision) -> None:
        """Record an admitted routing decision."""
        tier = decision.tier.value
        self._decisions.append(decision)
        self._requests += 1
        self._tier_counts[tier] += 1
        self._cost_by_tier[tier] = round(
            self._cost_by_tier.get(tier, 0.0) + decision.estimated_cost, 9
        )
        self._total_cost = round(self._total_cost + decision.estimated_cost, 9)
        self._premium_baseline = round(
            self._premium_baseline + decision.estimates.get("premium", decision.estimated_cost),
            9,
        )
        if decision.over_budget:
            self._over_budget += 1

        record_routing_decision(
            tier=tier,
            mode=decision.mode.value,
            reason=decision.reason.value,
            cost_usd=decision.estimated_cost,
            decision_seconds=decision.decision_latency_ms / 1000,
        )

    def record_rejection(self, error: str) -> None:
        self._rejections[error] += 1
        record_routing_rejection(error)

    def record_fallback(self, from_tier: str, to_tier: str) -> None:
        self._fallbacks += 1
        log.info("routing_metrics.fallback", from_tier=from_tier, to_tier=to_tier)

    def record_cache_lookup(self, hit: bool) -> None:
        if hit:
            self._cache_hits += 1
        else:
            self._cache_misses += 1
        record_cache_lookup(hit)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def totals(self) -> MetricsTotals:
        return MetricsTotals(
            requests=self._requests,
            total_cost=self._total_cost,
            cost_by_tier=dict(self._cost_by_tier),
            requests_by_tier=dict(self._tier_counts),
        )

    def recent(self, limit: int | None = None) -> list[RoutingDecision]:
        decisions = list(self._decisions)
        return decisions[-limit:] if limit else decisions

    def summary(self) -> dict[str, Any]:
        """Aggregate view served by the metrics endpoint.

        Returns:
            Dict with tier usage, cumulative cost, cache-hit rate, fallback
            rate, savings against premium-only routing and average cost
        """
        lookups = self._cache_hits + self._cache_misses
        savings = max(0.0, self._premium_baseline - self._total_cost)
        return {
            "total_requests": self._requests,
            "tier_usage": {tier: self._tier_counts.get(tier, 0) for tier in ("local", "elastic", "premium")},
            "cost_by_tier_usd": {tier: round(cost, 6) for tier, cost in self._cost_by_tier.items()},
            "cumulative_cost_usd": round(self._total_cost, 6),
            "average_cost_per_request_usd": round(
                self._total_cost / self._requests if self._requests else 0.0, 6
            ),
            "cache_hits": self._cache_hits,
            "cache_hit_rate": round(self._cache_hits / lookups, 4) if lookups else 0.0,
            "fallbacks": self._fallbacks,
            "fallback_rate": round(self._fallbacks / self._requests, 4) if self._requests else 0.0,
            "over_budget_decisions": self._over_budget,
            "savings_vs_premium_usd": round(savings, 6),
            "savings_vs_premium_pct": round(
                savings / self._premium_baseline * 100 if self._premium_baseline else 0.0, 2
            ),
            "rejections": dict(self._rejections),
        }
