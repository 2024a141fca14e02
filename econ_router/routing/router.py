"""Tier router - budget-aware admission and tier selection.

The router picks an execution tier for each request by trading off cost,
quality and the owner's remaining budget:

- cost_optimized: cheapest tier first, escalating only past tiers that are
  unavailable or do not fit the budget
- balanced: drop tiers costing more than a share of the remaining budget,
  then take the best quality left (simple task types go cheapest-first)
- performance: best quality first; the budget is soft and an over-budget
  pick is flagged rather than refused

Check, decide and debit run while the ledger's period locks are held, so
the chosen cost can never push concurrent requests jointly past a ceiling
in the hard-ceiling modes.
"""

from __future__ import annotations

import dataclasses
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from econ_router.routing.budget import DEFAULT_OWNER
from econ_router.routing.errors import BudgetExceeded, EstimationError, RouterError, TierUnavailable
from econ_router.routing.estimator import estimate_output_tokens, validate_token_count
from econ_router.routing.runtime import EconomicMode
from econ_router.routing.store import LedgerEntry
from econ_router.routing.tiers import TierId

if TYPE_CHECKING:
    from econ_router.routing.alerts import BudgetNotifier
    from econ_router.routing.budget import BudgetLedger, BudgetSnapshot
    from econ_router.routing.estimator import CostEstimator, TokenCounter
    from econ_router.routing.metrics import RoutingMetrics
    from econ_router.routing.runtime import RouterConfig, RuntimeConfigHolder
    from econ_router.routing.tiers import Tier, TierRegistry

log = structlog.get_logger(__name__)


class RoutingReason(str, Enum):
    """Why a tier was chosen."""

    CHEAPEST_FIT = "cheapest_fit"
    ESCALATED = "escalated"  # Cheaper tiers skipped (unavailable or over budget)
    BALANCED_FIT = "balanced_fit"
    SIMPLE_TASK = "simple_task"
    BEST_QUALITY = "best_quality"
    DOWNGRADED = "downgraded"  # Better tiers skipped in performance mode
    OVER_BUDGET = "over_budget"
    CACHED = "cached"


@dataclass(frozen=True)
class InferenceRequest:
    """One unit of routable work.

    Attributes:
        prompt: Opaque payload; only its size matters for routing
        input_tokens: Estimated prompt tokens
        output_tokens: Estimated completion tokens
        task_type: Declared task type (affects tier preference)
        mode: Requested economic mode. None means the active mode.
        owner: Budget owner charged for the decision
        request_id: Correlates the decision, the debit and the logs
    """

    prompt: str
    input_tokens: int
    output_tokens: int
    task_type: str = "general"
    mode: EconomicMode | None = None
    owner: str = DEFAULT_OWNER
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str):
            raise EstimationError(f"prompt must be a string, got {type(self.prompt).__name__}")
        validate_token_count(self.input_tokens, "input_tokens")
        validate_token_count(self.output_tokens, "output_tokens")
        if self.mode is not None:
            object.__setattr__(self, "mode", EconomicMode.parse(self.mode))
        if not self.owner:
            object.__setattr__(self, "owner", DEFAULT_OWNER)

    @classmethod
    def from_prompt(
        cls,
        prompt: str,
        *,
        counter: TokenCounter,
        output_ratio: float = 1.0,
        task_type: str = "general",
        mode: EconomicMode | str | None = None,
        owner: str | None = None,
        request_id: str | None = None,
    ) -> InferenceRequest:
        """Build a request, deriving token estimates from the prompt."""
        if not isinstance(prompt, str):
            raise EstimationError(f"prompt must be a string, got {type(prompt).__name__}")
        input_tokens = counter.count(prompt)
        return cls(
            prompt=prompt,
            input_tokens=input_tokens,
            output_tokens=estimate_output_tokens(input_tokens, output_ratio),
            task_type=task_type,
            mode=EconomicMode.parse(mode) if mode is not None else None,
            owner=owner or DEFAULT_OWNER,
            request_id=request_id or uuid.uuid4().hex,
        )


@dataclass(frozen=True)
class RoutingDecision:
    """Output of the router, debited against the ledger before it is returned.

    ``estimated_cost`` never exceeds the binding remaining budget unless
    ``over_budget`` is set, which only performance mode does.
    """

    request_id: str
    owner: str
    tier: TierId
    model_id: str
    mode: EconomicMode
    reason: RoutingReason
    estimated_cost: float
    over_budget: bool
    decision_latency_ms: float
    expected_latency_ms: int
    input_tokens: int
    output_tokens: int
    task_type: str
    estimates: dict[str, float]
    budget_remaining: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "owner": self.owner,
            "tier": self.tier.value,
            "model_id": self.model_id,
            "mode": self.mode.value,
            "reason": self.reason.value,
            "cost_estimate": self.estimated_cost,
            "over_budget": self.over_budget,
            "decision_latency_ms": self.decision_latency_ms,
            "expected_latency_ms": self.expected_latency_ms,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "task_type": self.task_type,
            "estimates": dict(self.estimates),
            "budget_remaining": self.budget_remaining,
            "timestamp": self.timestamp.isoformat(),
        }


class TierRouter:
    """Chooses a tier per request and debits the ledger atomically with it.

    The router is stateless per call. Its inputs are the request, a ledger
    snapshot taken under the period locks and the current runtime config.
    """

    def __init__(
        self,
        registry: TierRegistry,
        estimator: CostEstimator,
        ledger: BudgetLedger,
        config: RuntimeConfigHolder,
        metrics: RoutingMetrics,
        notifier: BudgetNotifier | None = None,
    ) -> None:
        self._registry = registry
        self._estimator = estimator
        self._ledger = ledger
        self._config = config
        self._metrics = metrics
        self._notifier = notifier

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def route(
        self,
        request: InferenceRequest,
        *,
        exclude: frozenset[TierId] = frozenset(),
    ) -> RoutingDecision:
        """Choose a tier for ``request`` and debit its estimated cost.

        Args:
            request: Request to route
            exclude: Tiers to treat as unavailable for this call only

        Returns:
            The admitted RoutingDecision

        Raises:
            BudgetExceeded: No tier fits the budget (cost_optimized/balanced)
            TierUnavailable: Every otherwise-eligible tier is unavailable
        """
        started = time.perf_counter()
        config = self._config.get()
        try:
            async with self._ledger.hold(request.owner):
                snapshot = self._ledger.snapshot(request.owner)
                decision = self.decide(
                    request, snapshot, config, exclude=exclude, started=started
                )
                alerts = self._ledger.record_spend(
                    LedgerEntry(
                        request_id=decision.request_id,
                        owner=decision.owner,
                        amount=decision.estimated_cost,
                        tier=decision.tier.value,
                        mode=decision.mode.value,
                        reason=decision.reason.value,
                        over_budget=decision.over_budget,
                        input_tokens=decision.input_tokens,
                        output_tokens=decision.output_tokens,
                        timestamp=decision.timestamp,
                    )
                )
        except RouterError as exc:
            self._metrics.record_rejection(type(exc).__name__)
            raise

        self._metrics.record(decision)
        if alerts and self._notifier is not None:
            self._notifier.dispatch(alerts)

        log.info(
            "tier_router.route_selected",
            request_id=decision.request_id,
            owner=decision.owner,
            tier=decision.tier.value,
            mode=decision.mode.value,
            reason=decision.reason.value,
            cost=decision.estimated_cost,
            over_budget=decision.over_budget,
            decision_latency_ms=decision.decision_latency_ms,
        )
        return decision

    def cached_decision(self, request: InferenceRequest, tier_id: TierId | str) -> RoutingDecision:
        """Decision for a request answered from the response cache.

        Costs nothing, so the ledger is not debited.
        """
        started = time.perf_counter()
        config = self._config.get()
        mode = request.mode if request.mode is not None else config.mode
        tiers = self._registry.list_tiers()
        estimates = self._estimator.estimate_all(tiers, request.input_tokens, request.output_tokens)
        decision = self._decision(
            request,
            self._registry.get(tier_id),
            mode,
            RoutingReason.CACHED,
            estimates,
            self._ledger.snapshot(request.owner).binding_remaining,
            started,
            over_budget=False,
        )
        decision = dataclasses.replace(decision, estimated_cost=0.0)
        self._metrics.record(decision)
        log.info(
            "tier_router.cache_hit",
            request_id=decision.request_id,
            owner=decision.owner,
            tier=decision.tier.value,
        )
        return decision

    def decide(
        self,
        request: InferenceRequest,
        snapshot: BudgetSnapshot,
        config: RouterConfig,
        *,
        exclude: frozenset[TierId] = frozenset(),
        started: float | None = None,
    ) -> RoutingDecision:
        """Pure selection step. Performs no I/O and mutates nothing."""
        started = started if started is not None else time.perf_counter()
        mode = EconomicMode.parse(request.mode) if request.mode is not None else config.mode
        tiers = self._registry.list_tiers()
        estimates = self._estimator.estimate_all(tiers, request.input_tokens, request.output_tokens)
        remaining = snapshot.binding_remaining

        candidates = self._candidates(mode, tiers, estimates, request.task_type, config, remaining)

        skipped_unavailable: list[Tier] = []
        skipped_over_budget: list[Tier] = []
        for position, tier in enumerate(candidates):
            if tier.tier_id in exclude or not self._registry.is_available(tier.tier_id):
                skipped_unavailable.append(tier)
                continue
            if not self._fits(estimates[tier.tier_id], remaining):
                skipped_over_budget.append(tier)
                continue
            reason = self._reason(mode, request.task_type, config, escalated=position > 0)
            return self._decision(
                request, tier, mode, reason, estimates, remaining, started, over_budget=False
            )

        if mode == EconomicMode.PERFORMANCE:
            available = [
                tier
                for tier in tiers
                if tier.tier_id not in exclude and self._registry.is_available(tier.tier_id)
            ]
            if not available:
                raise TierUnavailable([tier.tier_id.value for tier in tiers])
            cheapest = min(available, key=lambda t: (estimates[t.tier_id], t.quality_rank))
            log.warning(
                "tier_router.over_budget_override",
                request_id=request.request_id,
                owner=request.owner,
                tier=cheapest.tier_id.value,
                cost=estimates[cheapest.tier_id],
                remaining=remaining,
            )
            return self._decision(
                request,
                cheapest,
                mode,
                RoutingReason.OVER_BUDGET,
                estimates,
                remaining,
                started,
                over_budget=True,
            )

        # Tiers dropped by the balanced pre-filter count as over budget
        considered = {tier.tier_id for tier in candidates}
        over_budget = skipped_over_budget + [t for t in tiers if t.tier_id not in considered]
        if over_budget:
            raise BudgetExceeded(
                mode=mode.value,
                owner=request.owner,
                cheapest_cost=min(estimates[tier.tier_id] for tier in over_budget),
                remaining=remaining,
            )
        raise TierUnavailable([tier.tier_id.value for tier in skipped_unavailable])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fits(cost: float, remaining: float) -> bool:
        return cost == 0 or cost <= remaining

    def _candidates(
        self,
        mode: EconomicMode,
        tiers: list[Tier],
        estimates: dict[TierId, float],
        task_type: str,
        config: RouterConfig,
        remaining: float,
    ) -> list[Tier]:
        """Order (and for balanced mode, filter) the tiers to try."""

        def cheapest_first(tier: Tier) -> tuple[float, float, int]:
            return (estimates[tier.tier_id], tier.blended_cost_per_1k, tier.quality_rank)

        def best_first(tier: Tier) -> tuple[int, int, float]:
            return (-tier.quality_rank, tier.latency_p95_ms, estimates[tier.tier_id])

        if mode == EconomicMode.COST_OPTIMIZED:
            return sorted(tiers, key=cheapest_first)

        if mode == EconomicMode.PERFORMANCE:
            return sorted(tiers, key=best_first)

        limit = remaining * config.balanced_budget_fraction
        affordable = [t for t in tiers if estimates[t.tier_id] == 0 or estimates[t.tier_id] <= limit]
        order = cheapest_first if task_type in config.simple_task_types else best_first
        return sorted(
            affordable,
            key=lambda t: (t.tier_id in config.demoted_tiers, order(t)),
        )

    @staticmethod
    def _reason(
        mode: EconomicMode,
        task_type: str,
        config: RouterConfig,
        *,
        escalated: bool,
    ) -> RoutingReason:
        if mode == EconomicMode.COST_OPTIMIZED:
            return RoutingReason.ESCALATED if escalated else RoutingReason.CHEAPEST_FIT
        if mode == EconomicMode.PERFORMANCE:
            return RoutingReason.DOWNGRADED if escalated else RoutingReason.BEST_QUALITY
        if task_type in config.simple_task_types:
            return RoutingReason.SIMPLE_TASK
        return RoutingReason.BALANCED_FIT

    @staticmethod
    def _decision(
        request: InferenceRequest,
        tier: Tier,
        mode: EconomicMode,
        reason: RoutingReason,
        estimates: dict[TierId, float],
        remaining: float,
        started: float,
        *,
        over_budget: bool,
    ) -> RoutingDecision:
        return RoutingDecision(
            request_id=request.request_id,
            owner=request.owner,
            tier=tier.tier_id,
            model_id=tier.model_id,
            mode=mode,
            reason=reason,
            estimated_cost=estimates[tier.tier_id],
            over_budget=over_budget,
            decision_latency_ms=round((time.perf_counter() - started) * 1000, 3),
            expected_latency_ms=tier.latency_p95_ms,
            input_tokens=request.input_tokens,
            output_tokens=request.output_tokens,
            task_type=request.task_type,
            estimates={tier_id.value: cost for tier_id, cost in estimates.items()},
            budget_remaining=remaining,
        )
