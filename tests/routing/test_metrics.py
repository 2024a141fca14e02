"""Tests for RoutingMetrics aggregation."""

from __future__ import annotations

import pytest

from econ_router.routing.metrics import MetricsTotals, RoutingMetrics
from econ_router.routing.router import RoutingReason
from econ_router.routing.tiers import TierId

from tests.conftest import make_decision


def test_empty_summary_has_zero_rates():
    summary = RoutingMetrics().summary()

    assert summary["total_requests"] == 0
    assert summary["tier_usage"] == {"local": 0, "elastic": 0, "premium": 0}
    assert summary["cache_hit_rate"] == 0.0
    assert summary["fallback_rate"] == 0.0
    assert summary["average_cost_per_request_usd"] == 0.0


def test_summary_aggregates_decisions():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    metrics.record(make_decision(TierId.PREMIUM, 4.0, over_budget=True))

    summary = metrics.summary()

    assert summary["total_requests"] == 3
    assert summary["tier_usage"] == {"local": 2, "elastic": 0, "premium": 1}
    assert summary["cost_by_tier_usd"] == {"local": 2.0, "premium": 4.0}
    assert summary["cumulative_cost_usd"] == 6.0
    assert summary["average_cost_per_request_usd"] == 2.0
    assert summary["over_budget_decisions"] == 1


def test_savings_are_measured_against_premium_routing():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    metrics.record(make_decision(TierId.ELASTIC, 2.0))

    summary = metrics.summary()

    # Premium-only would have cost 8.0
    assert summary["savings_vs_premium_usd"] == 5.0
    assert summary["savings_vs_premium_pct"] == 62.5


def test_cache_and_fallback_rates():
    metrics = RoutingMetrics()
    metrics.record(make_decision())
    metrics.record(make_decision(cost=0.0, reason=RoutingReason.CACHED))
    metrics.record_cache_lookup(hit=False)
    metrics.record_cache_lookup(hit=True)
    metrics.record_cache_lookup(hit=True)
    metrics.record_fallback("local", "elastic")

    summary = metrics.summary()

    assert summary["cache_hits"] == 2
    assert summary["cache_hit_rate"] == pytest.approx(0.6667)
    assert summary["fallbacks"] == 1
    assert summary["fallback_rate"] == 0.5


def test_rejections_are_counted_by_error():
    metrics = RoutingMetrics()
    metrics.record_rejection("BudgetExceeded")
    metrics.record_rejection("BudgetExceeded")
    metrics.record_rejection("TierUnavailable")

    assert metrics.summary()["rejections"] == {"BudgetExceeded": 2, "TierUnavailable": 1}


def test_recent_history_is_bounded():
    metrics = RoutingMetrics(history_size=2)
    for cost in (1.0, 2.0, 3.0):
        metrics.record(make_decision(cost=cost))

    assert [d.estimated_cost for d in metrics.recent()] == [2.0, 3.0]
    assert [d.estimated_cost for d in metrics.recent(1)] == [3.0]
    assert metrics.totals().requests == 3


def test_totals_difference_isolates_new_activity():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    earlier = metrics.totals()
    metrics.record(make_decision(TierId.PREMIUM, 4.0))
    metrics.record(make_decision(TierId.PREMIUM, 4.0))

    window = metrics.totals().minus(earlier)

    assert window.requests == 2
    assert window.total_cost == 8.0
    assert window.cost_by_tier == {"local": 0.0, "premium": 8.0}
    assert window.requests_by_tier == {"local": 0, "premium": 2}
    assert window.average_cost == 4.0
    assert MetricsTotals().average_cost == 0.0
