"""Optimization monitor - background cost analysis and auto-tuning.

Runs two independent cadences:
- every ``optimization_interval`` seconds, a full pass: aggregate the
  activity since the previous pass, fold it into per-day snapshots, look for
  cost spikes and cost concentration, emit recommendations and auto-apply the
  ones that map to a runtime flag
- every ``budget_check_interval`` seconds, a budget threshold check that
  dispatches any newly crossed alerts

Auto-apply publishes a new RouterConfig through the RuntimeConfigHolder. A
flag that is already set is left alone and the recommendation is not counted
as applied, so repeating a pass on unchanged input changes nothing.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from econ_router.middleware.prometheus import clear_budget_remaining, update_budget_remaining
from econ_router.routing.budget import PeriodKind
from econ_router.routing.errors import OptimizationCycleError
from econ_router.routing.metrics import MetricsTotals
from econ_router.routing.tiers import TierId

if TYPE_CHECKING:
    from econ_router.config import Settings
    from econ_router.routing.alerts import BudgetNotifier
    from econ_router.routing.budget import BudgetAlert, BudgetLedger
    from econ_router.routing.metrics import RoutingMetrics
    from econ_router.routing.runtime import RuntimeConfigHolder

log = structlog.get_logger(__name__)


class RecommendationCategory(str, Enum):
    ANOMALY_RESOLUTION = "anomaly-resolution"
    EFFICIENCY_IMPROVEMENT = "efficiency-improvement"
    BATCHING = "batching"
    CACHING = "caching"
    MODEL_OPTIMIZATION = "model-optimization"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class OptimizationRecommendation:
    """An action proposed (and possibly applied) by one optimization pass.

    Attributes:
        category: What kind of action this is
        priority: Urgency
        title: Short summary
        description: Human-readable detail
        estimated_savings: Projected USD saved over the analysed window
        auto_applicable: Can be applied by toggling a runtime flag
        applied: Was applied by the pass that created it
        target: Flag or tier the action toggles, when auto-applicable
    """

    category: RecommendationCategory
    priority: Priority
    title: str
    description: str
    estimated_savings: float
    auto_applicable: bool
    applied: bool = False
    target: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "priority": self.priority.value,
            "title": self.title,
            "description": self.description,
            "estimated_savings_usd": round(self.estimated_savings, 6),
            "auto_applicable": self.auto_applicable,
            "applied": self.applied,
            "target": self.target,
        }


@dataclass
class DailyCostSnapshot:
    day: date
    requests: int = 0
    total_cost: float = 0.0

    @property
    def average_cost(self) -> float:
        return self.total_cost / self.requests if self.requests else 0.0


@dataclass(frozen=True)
class CostAnalysis:
    average_cost: float
    trailing_average: float | None
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    inefficiencies: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class OptimizationRun:
    """Outcome of one full optimization pass."""

    timestamp: datetime
    requests: int
    total_cost: float
    analysis: CostAnalysis
    recommendations: tuple[OptimizationRecommendation, ...]
    applied: tuple[OptimizationRecommendation, ...]

    @property
    def savings(self) -> float:
        return round(sum(rec.estimated_savings for rec in self.applied), 9)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "requests": self.requests,
            "total_cost_usd": round(self.total_cost, 6),
            "average_cost_usd": round(self.analysis.average_cost, 6),
            "trailing_average_usd": (
                None
                if self.analysis.trailing_average is None
                else round(self.analysis.trailing_average, 6)
            ),
            "anomalies": self.analysis.anomalies,
            "inefficiencies": self.analysis.inefficiencies,
            "recommendations": [rec.to_dict() for rec in self.recommendations],
            "applied": [rec.to_dict() for rec in self.applied],
            "savings_usd": round(self.savings, 6),
        }


@dataclass(frozen=True)
class OptimizerTunables:
    """Thresholds and savings ratios for the analysis step."""

    anomaly_spike_ratio: float = 0.20
    trailing_window_days: int = 7
    inefficiency_share: float = 0.40
    batching_request_threshold: int = 1000
    efficiency_savings_ratio: float = 0.30
    caching_savings_ratio: float = 0.25
    model_routing_savings_ratio: float = 0.20
    batching_savings_ratio: float = 0.15

    @classmethod
    def from_settings(cls, settings: Settings) -> OptimizerTunables:
        return cls(
            anomaly_spike_ratio=settings.anomaly_spike_ratio,
            trailing_window_days=settings.trailing_window_days,
            inefficiency_share=settings.inefficiency_share,
            batching_request_threshold=settings.batching_request_threshold,
            efficiency_savings_ratio=settings.efficiency_savings_ratio,
            caching_savings_ratio=settings.caching_savings_ratio,
            model_routing_savings_ratio=settings.model_routing_savings_ratio,
            batching_savings_ratio=settings.batching_savings_ratio,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OptimizationMonitor:
    """Periodic cost analysis that feeds runtime config changes back to the router."""

    def __init__(
        self,
        metrics: RoutingMetrics,
        ledger: BudgetLedger,
        config: RuntimeConfigHolder,
        notifier: BudgetNotifier | None = None,
        *,
        tunables: OptimizerTunables | None = None,
        optimization_interval: float = 3600.0,
        budget_check_interval: float = 60.0,
        history_size: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._metrics = metrics
        self._ledger = ledger
        self._config = config
        self._notifier = notifier
        self._tunables = tunables or OptimizerTunables()
        self._optimization_interval = optimization_interval
        self._budget_check_interval = budget_check_interval
        self._clock = clock

        self._last_totals = MetricsTotals()
        self._current_day: DailyCostSnapshot | None = None
        self._completed_days: deque[DailyCostSnapshot] = deque(
            maxlen=self._tunables.trailing_window_days
        )
        self._history: deque[OptimizationRun] = deque(maxlen=history_size)
        self._total_runs = 0
        self._total_savings = 0.0
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        metrics: RoutingMetrics,
        ledger: BudgetLedger,
        config: RuntimeConfigHolder,
        notifier: BudgetNotifier | None = None,
    ) -> OptimizationMonitor:
        return cls(
            metrics,
            ledger,
            config,
            notifier,
            tunables=OptimizerTunables.from_settings(settings),
            optimization_interval=settings.optimization_interval_seconds,
            budget_check_interval=settings.budget_check_interval_seconds,
            history_size=settings.optimization_history_size,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            log.warning("optimization_monitor.already_running")
            return
        self._tasks = [
            asyncio.create_task(self._optimization_loop()),
            asyncio.create_task(self._budget_loop()),
        ]
        log.info(
            "optimization_monitor.started",
            optimization_interval_s=self._optimization_interval,
            budget_check_interval_s=self._budget_check_interval,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            log.info("optimization_monitor.stopped")

    async def _optimization_loop(self) -> None:
        while True:
            await asyncio.sleep(self._optimization_interval)
            try:
                self.run_optimization()
            except OptimizationCycleError as exc:
                log.error("optimization_monitor.cycle_failed", error=str(exc))
            except Exception as exc:
                log.error("optimization_monitor.cycle_failed", error=str(exc), exc_info=True)

    async def _budget_loop(self) -> None:
        while True:
            await asyncio.sleep(self._budget_check_interval)
            try:
                self.check_budget_thresholds()
            except Exception as exc:
                log.error("optimization_monitor.budget_check_failed", error=str(exc), exc_info=True)

    # ------------------------------------------------------------------
    # Optimization pass
    # ------------------------------------------------------------------

    def run_optimization(self) -> OptimizationRun:
        """Analyse activity since the previous pass and auto-apply what applies.

        Raises:
            OptimizationCycleError: Metrics could not be read
        """
        try:
            current = self._metrics.totals()
        except Exception as exc:
            raise OptimizationCycleError(f"Could not read routing metrics: {exc}") from exc

        window = current.minus(self._last_totals)
        self._last_totals = current
        self._fold(window)

        analysis = self.analyze(window)
        recommendations = self.recommend(analysis, window)
        applied = self.apply(recommendations)

        applied_keys = {(rec.category, rec.target) for rec in applied}
        run = OptimizationRun(
            timestamp=self._clock(),
            requests=window.requests,
            total_cost=window.total_cost,
            analysis=analysis,
            recommendations=tuple(
                dataclasses.replace(rec, applied=True)
                if (rec.category, rec.target) in applied_keys
                else rec
                for rec in recommendations
            ),
            applied=tuple(applied),
        )
        self._history.append(run)
        self._total_runs += 1
        self._total_savings = round(self._total_savings + run.savings, 9)

        log.info(
            "optimization_monitor.pass_completed",
            requests=window.requests,
            total_cost=round(window.total_cost, 6),
            anomalies=len(analysis.anomalies),
            recommendations=len(recommendations),
            applied=[rec.category.value for rec in applied],
            savings=run.savings,
        )
        return run

    def _fold(self, window: MetricsTotals) -> None:
        today = self._clock().astimezone(UTC).date()
        if self._current_day is not None and self._current_day.day != today:
            self._completed_days.append(self._current_day)
            self._current_day = None
        if self._current_day is None:
            self._current_day = DailyCostSnapshot(day=today)
        self._current_day.requests += window.requests
        self._current_day.total_cost = round(self._current_day.total_cost + window.total_cost, 9)

    def analyze(self, window: MetricsTotals) -> CostAnalysis:
        """Find cost spikes against the trailing daily average and cost concentration by tier."""
        tun = self._tunables
        average = window.average_cost
        trailing: float | None = None
        anomalies: list[dict[str, Any]] = []

        # Needs a full window of completed days
        if len(self._completed_days) >= tun.trailing_window_days:
            days = list(self._completed_days)[-tun.trailing_window_days :]
            trailing = sum(day.average_cost for day in days) / len(days)
            if trailing > 0 and average > trailing * (1 + tun.anomaly_spike_ratio):
                anomalies.append(
                    {
                        "type": "cost-spike",
                        "severity": "high",
                        "current": average,
                        "expected": trailing,
                        "increase_pct": round((average - trailing) / trailing * 100, 2),
                    }
                )

        inefficiencies: list[dict[str, Any]] = []
        if window.total_cost > 0:
            for tier, cost in sorted(window.cost_by_tier.items()):
                share = cost / window.total_cost
                if share > tun.inefficiency_share:
                    inefficiencies.append(
                        {"category": tier, "cost": cost, "share_pct": round(share * 100, 2)}
                    )

        return CostAnalysis(
            average_cost=average,
            trailing_average=trailing,
            anomalies=anomalies,
            inefficiencies=inefficiencies,
        )

    def recommend(
        self, analysis: CostAnalysis, window: MetricsTotals
    ) -> list[OptimizationRecommendation]:
        """Turn an analysis into recommendations, highest estimated savings first."""
        tun = self._tunables
        recs: list[OptimizationRecommendation] = []

        for anomaly in analysis.anomalies:
            excess = (anomaly["current"] - anomaly["expected"]) * window.requests
            recs.append(
                OptimizationRecommendation(
                    category=RecommendationCategory.ANOMALY_RESOLUTION,
                    priority=Priority.HIGH,
                    title="Investigate cost spike",
                    description=(
                        f"Average cost per request is up {anomaly['increase_pct']}% "
                        f"on the trailing {tun.trailing_window_days}-day average"
                    ),
                    estimated_savings=excess,
                    auto_applicable=False,
                )
            )

        for item in analysis.inefficiencies:
            # Demoting the cheapest-tier fallback would only push traffic upward
            demotable = item["category"] != TierId.LOCAL.value
            recs.append(
                OptimizationRecommendation(
                    category=RecommendationCategory.EFFICIENCY_IMPROVEMENT,
                    priority=Priority.HIGH,
                    title=f"Optimize {item['category']} usage",
                    description=(
                        f"{item['category']} accounts for {item['share_pct']}% of routed cost"
                    ),
                    estimated_savings=item["cost"] * tun.efficiency_savings_ratio,
                    auto_applicable=demotable,
                    target=item["category"] if demotable else None,
                )
            )

        if window.requests >= tun.batching_request_threshold:
            recs.append(
                OptimizationRecommendation(
                    category=RecommendationCategory.BATCHING,
                    priority=Priority.MEDIUM,
                    title="Enable request batching",
                    description="High request volume: coalesce identical in-flight requests",
                    estimated_savings=window.total_cost * tun.batching_savings_ratio,
                    auto_applicable=True,
                    target="batching_enabled",
                )
            )

        recs.append(
            OptimizationRecommendation(
                category=RecommendationCategory.CACHING,
                priority=Priority.HIGH,
                title="Enable response caching",
                description="Serve repeated prompts from the response cache",
                estimated_savings=window.total_cost * tun.caching_savings_ratio,
                auto_applicable=True,
                target="caching_enabled",
            )
        )
        recs.append(
            OptimizationRecommendation(
                category=RecommendationCategory.MODEL_OPTIMIZATION,
                priority=Priority.MEDIUM,
                title="Route simple tasks to cheaper tiers",
                description="Add high-volume simple task types to the cheapest-first list",
                estimated_savings=window.total_cost * tun.model_routing_savings_ratio,
                auto_applicable=False,
            )
        )

        recs.sort(key=lambda rec: rec.estimated_savings, reverse=True)
        return recs

    def apply(
        self, recommendations: list[OptimizationRecommendation]
    ) -> list[OptimizationRecommendation]:
        """Apply auto-applicable recommendations whose flag is not already set.

        Returns:
            The recommendations that changed the runtime config, marked applied
        """
        applied: list[OptimizationRecommendation] = []
        for rec in recommendations:
            if not rec.auto_applicable:
                continue
            config = self._config.get()
            if rec.category == RecommendationCategory.CACHING:
                if config.caching_enabled:
                    continue
                self._config.update(caching_enabled=True)
            elif rec.category == RecommendationCategory.BATCHING:
                if config.batching_enabled:
                    continue
                self._config.update(batching_enabled=True)
            elif rec.category == RecommendationCategory.EFFICIENCY_IMPROVEMENT:
                tier = TierId(rec.target)
                if tier in config.demoted_tiers:
                    continue
                self._config.update(demoted_tiers=config.demoted_tiers | {tier})
            else:
                log.warning("optimization_monitor.unknown_category", category=rec.category.value)
                continue

            log.info(
                "optimization_monitor.applied",
                category=rec.category.value,
                target=rec.target,
                estimated_savings=round(rec.estimated_savings, 6),
            )
            applied.append(dataclasses.replace(rec, applied=True))
        return applied

    # ------------------------------------------------------------------
    # Budget checks & reporting
    # ------------------------------------------------------------------

    def check_budget_thresholds(self) -> list[BudgetAlert]:
        """Dispatch alerts for newly crossed thresholds and refresh budget gauges.

        Owners with nothing spent in their current periods are dropped first.
        """
        for owner in self._ledger.prune_idle():
            clear_budget_remaining(owner)
        alerts = self._ledger.check_thresholds()
        for owner in self._ledger.owners():
            update_budget_remaining(
                owner, PeriodKind.DAILY.value, self._ledger.remaining(PeriodKind.DAILY, owner)
            )
            update_budget_remaining(
                owner, PeriodKind.MONTHLY.value, self._ledger.remaining(PeriodKind.MONTHLY, owner)
            )
        if alerts and self._notifier is not None:
            self._notifier.dispatch(alerts)
        return alerts

    def history(self) -> list[OptimizationRun]:
        return list(self._history)

    def statistics(self) -> dict[str, Any]:
        return {
            "current_metrics": self._metrics.summary(),
            "runtime_config": self._config.get().to_dict(),
            "total_optimizations": self._total_runs,
            "total_savings_usd": round(self._total_savings, 6),
            "avg_savings_per_optimization_usd": round(
                self._total_savings / self._total_runs if self._total_runs else 0.0, 6
            ),
            "recent_optimizations": [run.to_dict() for run in list(self._history)[-10:]],
        }
