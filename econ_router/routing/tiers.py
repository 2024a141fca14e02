"""Tier registry - the catalog of execution backends and their availability.

Three tiers are known:
- LOCAL: self-hosted model, the always-reachable fallback
- ELASTIC: autoscaled GPU pool, mid cost
- PREMIUM: hosted frontier API, highest cost and quality

Tier definitions are immutable for the life of the process. Only the
availability flag changes, refreshed by an interval health probe that runs
outside any ledger lock. Reads of the flag never block.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

import httpx
import structlog

from econ_router.routing.errors import ConfigurationError

if TYPE_CHECKING:
    from econ_router.config import Settings

log = structlog.get_logger(__name__)


class TierId(str, Enum):
    """Execution tiers for routing decisions."""

    LOCAL = "local"  # Free-ish, self-hosted, never probed
    ELASTIC = "elastic"  # Elastic GPU pool
    PREMIUM = "premium"  # Hosted premium API


@dataclass(frozen=True)
class Tier:
    """Cost and latency model for one execution tier.

    Attributes:
        tier_id: Which tier this is
        model_id: LiteLLM model identifier served by the tier
        input_cost_per_1k: USD per 1K prompt tokens
        output_cost_per_1k: USD per 1K completion tokens
        latency_p95_ms: Expected p95 latency, reported to callers
        quality_rank: Higher is better; orders performance-mode candidates
        api_base: Optional base URL passed to LiteLLM
        health_url: Optional probe URL. None means statically available.
    """

    tier_id: TierId
    model_id: str
    input_cost_per_1k: float
    output_cost_per_1k: float
    latency_p95_ms: int
    quality_rank: int
    api_base: str | None = None
    health_url: str | None = None

    def __post_init__(self) -> None:
        if self.input_cost_per_1k < 0 or self.output_cost_per_1k < 0:
            raise ConfigurationError(f"{self.tier_id.value}: token costs cannot be negative")
        if self.latency_p95_ms < 1:
            raise ConfigurationError(f"{self.tier_id.value}: latency_p95_ms must be positive")
        if not self.model_id:
            raise ConfigurationError(f"{self.tier_id.value}: model_id is required")
        if self.tier_id == TierId.LOCAL and self.health_url:
            raise ConfigurationError("local tier must not depend on an external health probe")

    @property
    def blended_cost_per_1k(self) -> float:
        return self.input_cost_per_1k + self.output_cost_per_1k


@dataclass
class TierStatus:
    """Cached probe outcome for a tier."""

    available: bool = True
    checked_at: datetime | None = None
    latency_ms: float | None = None
    error: str | None = None


@dataclass
class _ProbeState:
    task: asyncio.Task[None] | None = None
    client: httpx.AsyncClient | None = None
    owns_client: bool = False


def default_tiers(settings: Settings) -> list[Tier]:
    """Build the three-tier catalog from settings."""
    return [
        Tier(
            tier_id=TierId.LOCAL,
            model_id=settings.local_model,
            input_cost_per_1k=settings.local_input_cost_per_1k,
            output_cost_per_1k=settings.local_output_cost_per_1k,
            latency_p95_ms=settings.local_latency_p95_ms,
            quality_rank=1,
            api_base=settings.local_api_base,
        ),
        Tier(
            tier_id=TierId.ELASTIC,
            model_id=settings.elastic_model,
            input_cost_per_1k=settings.elastic_input_cost_per_1k,
            output_cost_per_1k=settings.elastic_output_cost_per_1k,
            latency_p95_ms=settings.elastic_latency_p95_ms,
            quality_rank=2,
            api_base=settings.elastic_api_base,
            health_url=settings.elastic_health_url,
        ),
        Tier(
            tier_id=TierId.PREMIUM,
            model_id=settings.premium_model,
            input_cost_per_1k=settings.premium_input_cost_per_1k,
            output_cost_per_1k=settings.premium_output_cost_per_1k,
            latency_p95_ms=settings.premium_latency_p95_ms,
            quality_rank=3,
            api_base=settings.premium_api_base,
            health_url=settings.premium_health_url,
        ),
    ]


class TierRegistry:
    """Static tier catalog plus an eventually-consistent availability cache.

    LOCAL is always reported available. ELASTIC and PREMIUM are probed on an
    interval when they declare a health URL; a failed probe marks the tier
    unavailable until a later probe succeeds. Transport failures seen by the
    dispatcher mark a tier unavailable immediately.
    """

    def __init__(
        self,
        tiers: list[Tier],
        *,
        probe_interval: float = 30.0,
        probe_timeout: float = 2.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        ids = [tier.tier_id for tier in tiers]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Duplicate tier ids in catalog: {[t.value for t in ids]}")
        if TierId.LOCAL not in ids:
            raise ConfigurationError("Tier catalog must define the local fallback tier")

        self._tiers: dict[TierId, Tier] = {tier.tier_id: tier for tier in tiers}
        self._status: dict[TierId, TierStatus] = {tier_id: TierStatus() for tier_id in ids}
        self._probe_interval = probe_interval
        self._probe_timeout = probe_timeout
        self._probe = _ProbeState(client=http_client)

        log.info(
            "tier_registry.initialized",
            tiers={tier.tier_id.value: tier.model_id for tier in tiers},
            probed=[tier.tier_id.value for tier in tiers if tier.health_url],
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> TierRegistry:
        return cls(
            default_tiers(settings),
            probe_interval=settings.probe_interval_seconds,
            probe_timeout=settings.probe_timeout_seconds,
            http_client=http_client,
        )

    # ------------------------------------------------------------------
    # Catalog reads
    # ------------------------------------------------------------------

    def list_tiers(self) -> list[Tier]:
        return list(self._tiers.values())

    def get(self, tier_id: TierId | str) -> Tier:
        try:
            return self._tiers[TierId(tier_id)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Unknown tier: {tier_id}") from exc

    def is_available(self, tier_id: TierId | str) -> bool:
        """Non-blocking read of the cached availability flag."""
        tier_id = TierId(tier_id)
        if tier_id == TierId.LOCAL:
            return True
        status = self._status.get(tier_id)
        return status is not None and status.available

    def status(self) -> dict[str, TierStatus]:
        return {
            tier_id.value: TierStatus(
                available=self.is_available(tier_id),
                checked_at=status.checked_at,
                latency_ms=status.latency_ms,
                error=status.error,
            )
            for tier_id, status in self._status.items()
        }

    # ------------------------------------------------------------------
    # Availability writes
    # ------------------------------------------------------------------

    def set_availability(
        self,
        tier_id: TierId | str,
        available: bool,
        *,
        reason: str | None = None,
    ) -> None:
        tier_id = TierId(tier_id)
        if tier_id == TierId.LOCAL:
            if not available:
                log.warning("tier_registry.local_unavailable_ignored", reason=reason)
            return
        if tier_id not in self._status:
            raise ConfigurationError(f"Unknown tier: {tier_id.value}")

        status = self._status[tier_id]
        if status.available != available:
            log.warning(
                "tier_registry.availability_changed",
                tier=tier_id.value,
                available=available,
                reason=reason,
            )
        status.available = available
        status.error = None if available else reason
        status.checked_at = datetime.now(UTC)

    def mark_unavailable(self, tier_id: TierId | str, reason: str) -> None:
        """Take a tier out of rotation until the next successful probe."""
        self.set_availability(tier_id, False, reason=reason)

    # ------------------------------------------------------------------
    # Health probing
    # ------------------------------------------------------------------

    async def refresh(self) -> dict[str, bool]:
        """Probe every tier with a health URL concurrently."""
        probed = [tier for tier in self._tiers.values() if tier.health_url]
        if probed:
            await asyncio.gather(*(self._probe_tier(tier) for tier in probed))
        return {tier_id.value: self.is_available(tier_id) for tier_id in self._tiers}

    async def _probe_tier(self, tier: Tier) -> None:
        assert tier.health_url is not None
        client = self._client()
        start = time.perf_counter()
        error: str | None = None
        try:
            response = await client.get(tier.health_url, timeout=self._probe_timeout)
            if response.status_code >= 400:
                error = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        self.set_availability(tier.tier_id, error is None, reason=error)
        self._status[tier.tier_id].latency_ms = latency_ms

        log.debug(
            "tier_registry.probe_completed",
            tier=tier.tier_id.value,
            available=error is None,
            latency_ms=latency_ms,
            error=error,
        )

    def _client(self) -> httpx.AsyncClient:
        if self._probe.client is None:
            self._probe.client = httpx.AsyncClient()
            self._probe.owns_client = True
        return self._probe.client

    async def start(self) -> None:
        """Start the background probe loop."""
        if self._probe.task is not None:
            log.warning("tier_registry.already_running")
            return
        self._probe.task = asyncio.create_task(self._probe_loop())
        log.info("tier_registry.probing_started", interval_s=self._probe_interval)

    async def stop(self) -> None:
        task = self._probe.task
        self._probe.task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._probe.owns_client and self._probe.client is not None:
            await self._probe.client.aclose()
            self._probe.client = None
            self._probe.owns_client = False
        log.info("tier_registry.probing_stopped")

    async def _probe_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:
                log.error("tier_registry.probe_loop_error", error=str(exc), exc_info=True)
            await asyncio.sleep(self._probe_interval)
