"""Tests for the OptimizationMonitor analysis, auto-apply and loops."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from econ_router.middleware.prometheus import REGISTRY, update_budget_remaining
from econ_router.routing.alerts import AlertSink, BudgetNotifier
from econ_router.routing.budget import AlertLevel, BudgetLedger, PeriodKind
from econ_router.routing.errors import OptimizationCycleError
from econ_router.routing.metrics import RoutingMetrics
from econ_router.routing.optimizer import (
    OptimizationMonitor,
    OptimizerTunables,
    RecommendationCategory,
)
from econ_router.routing.runtime import RuntimeConfigHolder
from econ_router.routing.tiers import TierId

from tests.conftest import FakeClock, make_decision


class RecordingSink(AlertSink):
    name = "recording"

    def __init__(self) -> None:
        self.alerts = []

    async def send(self, alert) -> None:
        self.alerts.append(alert)


def _monitor(
    metrics: RoutingMetrics | None = None,
    *,
    clock: FakeClock | None = None,
    tunables: OptimizerTunables | None = None,
    notifier: BudgetNotifier | None = None,
    ledger: BudgetLedger | None = None,
) -> OptimizationMonitor:
    clock = clock or FakeClock()
    return OptimizationMonitor(
        metrics or RoutingMetrics(),
        ledger or BudgetLedger(10.0, 1000.0, clock=clock),
        RuntimeConfigHolder(),
        notifier,
        tunables=tunables,
        clock=clock,
    )


# ------------------------------------------------------------------ #
# Auto-apply
# ------------------------------------------------------------------ #


def test_first_pass_enables_caching():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics)

    run = monitor.run_optimization()

    assert monitor._config.get().caching_enabled is True
    assert [rec.category for rec in run.applied] == [RecommendationCategory.CACHING]
    assert all(rec.applied for rec in run.applied)
    caching = next(r for r in run.recommendations if r.category == RecommendationCategory.CACHING)
    assert caching.applied is True


def test_repeated_pass_on_unchanged_input_applies_nothing():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.PREMIUM, 4.0))
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics)

    first = monitor.run_optimization()
    config_after_first = monitor._config.get()
    second = monitor.run_optimization()

    assert first.applied
    assert second.applied == ()
    assert second.requests == 0
    assert monitor._config.get() is config_after_first
    stats = monitor.statistics()
    assert stats["total_optimizations"] == 2
    assert stats["total_savings_usd"] == round(first.savings, 6)


def test_repeated_pass_with_new_activity_does_not_reapply_flags():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics)
    monitor.run_optimization()

    metrics.record(make_decision(TierId.LOCAL, 1.0))
    run = monitor.run_optimization()

    assert run.requests == 1
    assert all(rec.category != RecommendationCategory.CACHING for rec in run.applied)


# ------------------------------------------------------------------ #
# Analysis
# ------------------------------------------------------------------ #


def test_dominant_premium_spend_demotes_premium():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.PREMIUM, 4.0))
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics)

    run = monitor.run_optimization()

    assert run.analysis.inefficiencies == [
        {"category": "premium", "cost": 4.0, "share_pct": 80.0}
    ]
    efficiency = next(
        r for r in run.applied if r.category == RecommendationCategory.EFFICIENCY_IMPROVEMENT
    )
    assert efficiency.target == "premium"
    assert efficiency.estimated_savings == pytest.approx(1.2)
    assert monitor._config.get().demoted_tiers == frozenset({TierId.PREMIUM})


def test_dominant_local_spend_is_never_demoted():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics)

    run = monitor.run_optimization()

    efficiency = next(
        r for r in run.recommendations
        if r.category == RecommendationCategory.EFFICIENCY_IMPROVEMENT
    )
    assert efficiency.auto_applicable is False
    assert efficiency.applied is False
    assert monitor._config.get().demoted_tiers == frozenset()


def test_recommendations_are_sorted_by_savings():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.PREMIUM, 4.0))
    metrics.record(make_decision(TierId.LOCAL, 1.0))

    run = _monitor(metrics).run_optimization()

    savings = [rec.estimated_savings for rec in run.recommendations]
    assert savings == sorted(savings, reverse=True)
    # caching 1.25, premium efficiency 1.2, model routing 1.0
    assert [rec.category for rec in run.recommendations] == [
        RecommendationCategory.CACHING,
        RecommendationCategory.EFFICIENCY_IMPROVEMENT,
        RecommendationCategory.MODEL_OPTIMIZATION,
    ]


def test_batching_recommended_above_request_threshold():
    metrics = RoutingMetrics()
    for _ in range(5):
        metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics, tunables=OptimizerTunables(batching_request_threshold=5))

    run = monitor.run_optimization()

    assert RecommendationCategory.BATCHING in {rec.category for rec in run.applied}
    assert monitor._config.get().batching_enabled is True


def test_batching_not_recommended_below_threshold():
    metrics = RoutingMetrics()
    for _ in range(4):
        metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics, tunables=OptimizerTunables(batching_request_threshold=5))

    run = monitor.run_optimization()

    assert RecommendationCategory.BATCHING not in {rec.category for rec in run.recommendations}
    assert monitor._config.get().batching_enabled is False


def test_cost_spike_needs_a_full_trailing_window(clock: FakeClock):
    metrics = RoutingMetrics()
    monitor = _monitor(metrics, clock=clock)

    # Seven days at $1.00 per request
    for _ in range(7):
        metrics.record(make_decision(TierId.LOCAL, 1.0))
        run = monitor.run_optimization()
        assert run.analysis.anomalies == []
        assert run.analysis.trailing_average is None
        clock.advance(days=1)

    # Day eight at $2.00 per request: 100% over the trailing average
    metrics.record(make_decision(TierId.ELASTIC, 2.0))
    run = monitor.run_optimization()

    assert run.analysis.trailing_average == pytest.approx(1.0)
    assert len(run.analysis.anomalies) == 1
    anomaly = run.analysis.anomalies[0]
    assert anomaly["type"] == "cost-spike"
    assert anomaly["increase_pct"] == 100.0
    spike = next(
        r for r in run.recommendations if r.category == RecommendationCategory.ANOMALY_RESOLUTION
    )
    assert spike.auto_applicable is False
    assert spike.estimated_savings == pytest.approx(1.0)


def test_small_increase_is_not_a_spike(clock: FakeClock):
    metrics = RoutingMetrics()
    monitor = _monitor(metrics, clock=clock)
    for _ in range(7):
        metrics.record(make_decision(TierId.LOCAL, 1.0))
        monitor.run_optimization()
        clock.advance(days=1)

    metrics.record(make_decision(TierId.LOCAL, 1.1))
    run = monitor.run_optimization()

    assert run.analysis.trailing_average == pytest.approx(1.0)
    assert run.analysis.anomalies == []


# ------------------------------------------------------------------ #
# Failures & loops
# ------------------------------------------------------------------ #


def test_unreadable_metrics_raise_cycle_error():
    metrics = MagicMock(spec=RoutingMetrics)
    metrics.totals.side_effect = RuntimeError("metrics backend gone")

    with pytest.raises(OptimizationCycleError):
        _monitor(metrics).run_optimization()


async def test_loop_survives_failed_cycles():
    metrics = MagicMock(spec=RoutingMetrics)
    metrics.totals.side_effect = RuntimeError("metrics backend gone")
    clock = FakeClock()
    monitor = OptimizationMonitor(
        metrics,
        BudgetLedger(10.0, 1000.0, clock=clock),
        RuntimeConfigHolder(),
        optimization_interval=0.01,
        budget_check_interval=0.01,
        clock=clock,
    )

    await monitor.start()
    await asyncio.sleep(0.05)
    assert monitor.running is True
    assert all(not task.done() for task in monitor._tasks)
    await monitor.stop()

    assert monitor.running is False
    assert metrics.totals.call_count >= 2


async def test_loop_survives_failed_config_update(monkeypatch: pytest.MonkeyPatch):
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    watched = MagicMock(wraps=metrics)
    config = RuntimeConfigHolder()
    monkeypatch.setattr(
        config, "update", MagicMock(side_effect=RuntimeError("config store unavailable"))
    )
    clock = FakeClock()
    monitor = OptimizationMonitor(
        watched,
        BudgetLedger(10.0, 1000.0, clock=clock),
        config,
        optimization_interval=0.01,
        budget_check_interval=0.01,
        clock=clock,
    )

    await monitor.start()
    await asyncio.sleep(0.05)
    assert all(not task.done() for task in monitor._tasks)
    await monitor.stop()

    config.update.assert_called_with(caching_enabled=True)
    # Later passes kept running after the failed one
    assert watched.totals.call_count >= 2
    assert config.get().caching_enabled is False


async def test_budget_check_dispatches_new_alerts(clock: FakeClock):
    sink = RecordingSink()
    notifier = BudgetNotifier(sinks=[sink])
    ledger = BudgetLedger(10.0, 1000.0, clock=clock)
    ledger.debit(PeriodKind.DAILY, 9.0)
    monitor = _monitor(clock=clock, ledger=ledger, notifier=notifier)

    alerts = monitor.check_budget_thresholds()
    await notifier.drain()

    assert [(a.kind, a.level) for a in alerts] == [(PeriodKind.DAILY, AlertLevel.WARNING)]
    assert sink.alerts == alerts
    assert monitor.check_budget_thresholds() == []


def test_budget_check_drops_idle_owners(clock: FakeClock):
    ledger = BudgetLedger(10.0, 1000.0, clock=clock)
    for i in range(20):
        ledger.snapshot(f"p{i}")
    ledger.debit(PeriodKind.DAILY, 1.0, "busy")
    update_budget_remaining("p0", "daily", 10.0)
    monitor = _monitor(clock=clock, ledger=ledger)

    monitor.check_budget_thresholds()

    assert ledger.owners() == ["busy"]
    samples = [
        sample.labels["owner"]
        for metric in REGISTRY.collect()
        if metric.name == "budget_remaining_usd"
        for sample in metric.samples
    ]
    assert "busy" in samples
    assert "p0" not in samples


def test_statistics_report_history():
    metrics = RoutingMetrics()
    metrics.record(make_decision(TierId.LOCAL, 1.0))
    monitor = _monitor(metrics)
    monitor.run_optimization()

    stats = monitor.statistics()

    assert stats["current_metrics"]["total_requests"] == 1
    assert stats["runtime_config"]["caching_enabled"] is True
    assert len(stats["recent_optimizations"]) == 1
    assert stats["recent_optimizations"][0]["applied"][0]["category"] == "caching"
    assert len(monitor.history()) == 1
