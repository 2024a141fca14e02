"""
Shared test fixtures for pytest.

Provides common builders and clients for all test modules:
- fake_settings: Test environment configuration (no probes, no optimizer loops)
- make_tier / make_request / make_decision: Small constructors for routing inputs
- harness: A fully wired TierRouter over a configurable three-tier catalog
- FakeClock: Mutable clock injected into the ledger and optimizer
- test_app / client: FastAPI app with a fresh InferenceService and an
  httpx client bound to it through ASGITransport
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import AsyncGenerator, Callable

import httpx
import pytest
from fastapi import FastAPI

from econ_router.config import Environment, Settings, get_settings
from econ_router.routing.alerts import BudgetNotifier
from econ_router.routing.budget import BudgetLedger
from econ_router.routing.estimator import CostEstimator
from econ_router.routing.metrics import RoutingMetrics
from econ_router.routing.router import InferenceRequest, RoutingDecision, RoutingReason, TierRouter
from econ_router.routing.runtime import EconomicMode, RouterConfig, RuntimeConfigHolder
from econ_router.routing.store import InMemoryLedgerStore, LedgerStore
from econ_router.routing.tiers import Tier, TierId, TierRegistry


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Clock
# ------------------------------------------------------------------ #

class FakeClock:
    """Callable clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ------------------------------------------------------------------ #
# Routing builders
# ------------------------------------------------------------------ #

_QUALITY = {TierId.LOCAL: 1, TierId.ELASTIC: 2, TierId.PREMIUM: 3}


def make_tier(
    tier_id: TierId,
    cost_per_1k: float,
    *,
    latency_ms: int = 100,
    health_url: str | None = None,
) -> Tier:
    """Tier priced on input tokens only, so 1000 input tokens cost ``cost_per_1k``."""
    return Tier(
        tier_id=tier_id,
        model_id=f"test/{tier_id.value}",
        input_cost_per_1k=cost_per_1k,
        output_cost_per_1k=0.0,
        latency_p95_ms=latency_ms,
        quality_rank=_QUALITY[tier_id],
        health_url=health_url,
    )


def make_request(
    mode: EconomicMode | str | None = None,
    *,
    input_tokens: int = 1000,
    output_tokens: int = 0,
    task_type: str = "general",
    owner: str = "default",
) -> InferenceRequest:
    """Request whose cost on a tier equals that tier's ``cost_per_1k``."""
    return InferenceRequest(
        prompt="route me",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        task_type=task_type,
        mode=mode,
        owner=owner,
    )


def make_decision(
    tier: TierId = TierId.LOCAL,
    cost: float = 1.0,
    *,
    premium_cost: float = 4.0,
    over_budget: bool = False,
    reason: RoutingReason = RoutingReason.CHEAPEST_FIT,
) -> RoutingDecision:
    """Admitted decision for feeding RoutingMetrics directly."""
    return RoutingDecision(
        request_id="req-1",
        owner="default",
        tier=tier,
        model_id=f"test/{tier.value}",
        mode=EconomicMode.COST_OPTIMIZED,
        reason=reason,
        estimated_cost=cost,
        over_budget=over_budget,
        decision_latency_ms=0.2,
        expected_latency_ms=100,
        input_tokens=1000,
        output_tokens=0,
        task_type="general",
        estimates={"local": 1.0, "elastic": 2.0, "premium": premium_cost},
        budget_remaining=10.0,
    )


@dataclass
class RouterHarness:
    registry: TierRegistry
    ledger: BudgetLedger
    config: RuntimeConfigHolder
    metrics: RoutingMetrics
    notifier: BudgetNotifier
    router: TierRouter


def build_harness(
    costs: tuple[float, float, float] = (1.0, 2.0, 4.0),
    *,
    daily: float = 10.0,
    monthly: float = 1000.0,
    mode: EconomicMode = EconomicMode.COST_OPTIMIZED,
    simple_task_types: frozenset[str] = frozenset({"simple_qa"}),
    daily_overrides: dict[str, float] | None = None,
    store: LedgerStore | None = None,
    clock: Callable[[], datetime] | None = None,
    http_client: httpx.AsyncClient | None = None,
    health_urls: dict[TierId, str] | None = None,
) -> RouterHarness:
    """Wire a router over local/elastic/premium tiers priced at ``costs``."""
    health_urls = health_urls or {}
    tiers = [
        make_tier(tier_id, cost, health_url=health_urls.get(tier_id))
        for tier_id, cost in zip((TierId.LOCAL, TierId.ELASTIC, TierId.PREMIUM), costs)
    ]
    registry = TierRegistry(tiers, http_client=http_client)
    ledger_kwargs = {"clock": clock} if clock is not None else {}
    ledger = BudgetLedger(
        daily,
        monthly,
        daily_overrides=daily_overrides,
        store=store or InMemoryLedgerStore(),
        **ledger_kwargs,
    )
    config = RuntimeConfigHolder(
        RouterConfig(mode=mode, balanced_budget_fraction=0.5, simple_task_types=simple_task_types)
    )
    metrics = RoutingMetrics()
    notifier = BudgetNotifier(sinks=[])
    router = TierRouter(registry, CostEstimator(), ledger, config, metrics, notifier)
    return RouterHarness(registry, ledger, config, metrics, notifier, router)


@pytest.fixture
def harness() -> RouterHarness:
    """Default harness: tiers at $1/$2/$4 per request, $10/day, cost_optimized."""
    return build_harness()


# ------------------------------------------------------------------ #
# Settings & App Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        litellm_api_key="sk-test-key",
        elastic_health_url=None,
        premium_health_url=None,
        ledger_backend="memory",
        cache_backend="memory",
        optimizer_enabled=False,
        default_economic_mode="balanced",
        budget_daily_usd=50.0,
        budget_monthly_usd=1000.0,
        alert_webhook_url=None,
        alert_redis_channel=None,
        debug=True,
    )


@pytest.fixture
def test_app(fake_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> FastAPI:
    """Create FastAPI test app instance with test settings.

    ASGITransport does not run the lifespan, so the InferenceService is built
    here and placed on app.state without starting its background tasks.
    """
    from econ_router.main import create_app
    from econ_router.service import InferenceService

    get_settings.cache_clear()
    monkeypatch.setattr("econ_router.main.get_settings", lambda: fake_settings)

    app = create_app()
    app.state.service = InferenceService.from_settings(
        fake_settings, notifier=BudgetNotifier(sinks=[])
    )
    return app


@pytest.fixture
async def client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client for testing FastAPI app."""
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
