"""Application service - builds and owns the routing components.

One InferenceService lives on ``app.state.service`` for the life of the
process. It is the only place that knows how the components fit together;
endpoints and background tasks receive it through FastAPI dependencies.

Startup order:
1. Ledger store writer (durable backend only)
2. Tier health probes
3. Optimization monitor loops (when enabled)

Shutdown runs in reverse, then drains pending alerts and closes the cache.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from econ_router.cache.backend import CacheBackend, get_cache_backend
from econ_router.middleware.prometheus import update_tier_availability
from econ_router.routing.alerts import BudgetNotifier
from econ_router.routing.budget import BudgetLedger
from econ_router.routing.dispatch import InferenceResult, TierDispatcher
from econ_router.routing.estimator import CostEstimator, TokenCounter, build_token_counter
from econ_router.routing.metrics import RoutingMetrics
from econ_router.routing.optimizer import OptimizationMonitor
from econ_router.routing.router import InferenceRequest, TierRouter
from econ_router.routing.runtime import EconomicMode, RuntimeConfigHolder
from econ_router.routing.store import InMemoryLedgerStore, LedgerStore
from econ_router.routing.tiers import TierRegistry

if TYPE_CHECKING:
    import httpx

    from econ_router.config import Settings

log = structlog.get_logger(__name__)


class InferenceService:
    """Facade over registry, ledger, router, dispatcher and optimizer."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: TierRegistry,
        ledger: BudgetLedger,
        config: RuntimeConfigHolder,
        metrics: RoutingMetrics,
        notifier: BudgetNotifier,
        router: TierRouter,
        dispatcher: TierDispatcher,
        optimizer: OptimizationMonitor,
        cache: CacheBackend,
        counter: TokenCounter,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.ledger = ledger
        self.config = config
        self.metrics = metrics
        self.notifier = notifier
        self.router = router
        self.dispatcher = dispatcher
        self.optimizer = optimizer
        self.cache = cache
        self.counter = counter

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: LedgerStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        notifier: BudgetNotifier | None = None,
        cache: CacheBackend | None = None,
    ) -> InferenceService:
        """Wire every component from settings.

        Args:
            settings: Application settings
            store: Ledger persistence. In-memory when omitted.
            http_client: Client used by the tier health probes
            notifier: Alert fan-out. Built from settings when omitted.
            cache: Response cache. Selected by ``cache_backend`` when omitted.
        """
        registry = TierRegistry.from_settings(settings, http_client=http_client)
        ledger = BudgetLedger.from_settings(settings, store=store or InMemoryLedgerStore())
        config = RuntimeConfigHolder.from_settings(settings)
        metrics = RoutingMetrics(history_size=settings.decision_history_size)
        notifier = notifier or BudgetNotifier.from_settings(settings)
        cache = cache or get_cache_backend(settings)

        router = TierRouter(registry, CostEstimator(), ledger, config, metrics, notifier)
        dispatcher = TierDispatcher.from_settings(
            settings, router, registry, config, metrics, cache=cache
        )
        optimizer = OptimizationMonitor.from_settings(settings, metrics, ledger, config, notifier)

        return cls(
            settings,
            registry=registry,
            ledger=ledger,
            config=config,
            metrics=metrics,
            notifier=notifier,
            router=router,
            dispatcher=dispatcher,
            optimizer=optimizer,
            cache=cache,
            counter=build_token_counter(settings),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.ledger.store.start()
        await self.registry.start()
        if self.settings.optimizer_enabled:
            await self.optimizer.start()
        log.info(
            "inference_service.started",
            mode=self.config.get().mode.value,
            optimizer=self.settings.optimizer_enabled,
        )

    async def stop(self) -> None:
        await self.optimizer.stop()
        await self.registry.stop()
        await self.ledger.store.stop()
        await self.notifier.close()
        await self.cache.close()
        log.info("inference_service.stopped")

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def build_request(
        self,
        prompt: str,
        *,
        task_type: str = "general",
        mode: EconomicMode | str | None = None,
        owner: str | None = None,
        request_id: str | None = None,
    ) -> InferenceRequest:
        return InferenceRequest.from_prompt(
            prompt,
            counter=self.counter,
            output_ratio=self.settings.output_token_ratio,
            task_type=task_type,
            mode=mode,
            owner=owner,
            request_id=request_id,
        )

    async def infer(self, request: InferenceRequest, *, execute: bool = False) -> InferenceResult:
        return await self.dispatcher.handle(request, execute=execute)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        """Per-tier availability and overall router health.

        ``degraded`` when any tier is down; the local tier keeps serving,
        so the router itself never reports unhealthy.
        """
        tiers: dict[str, Any] = {}
        for tier_id, status in self.registry.status().items():
            update_tier_availability(tier_id, status.available)
            tiers[tier_id] = {
                "available": status.available,
                "checked_at": status.checked_at.isoformat() if status.checked_at else None,
                "latency_ms": status.latency_ms,
                "error": status.error,
            }
        healthy = all(tier["available"] for tier in tiers.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "tiers": tiers,
            "mode": self.config.get().mode.value,
            "optimizer_running": self.optimizer.running,
        }
