"""Tier dispatch - run a routed request on its tier, with fallback.

The dispatcher is the only component that talks to model backends. For a
request that asks for execution it:

1. Serves it from the response cache when caching is enabled (no debit)
2. Routes it (the router debits the estimate)
3. Coalesces identical in-flight executions when batching is enabled
4. Calls the tier through LiteLLM, retrying rate limits with backoff
5. On a transport failure, marks the tier unavailable and routes again
   with that tier excluded, up to ``max_attempts`` decisions

A failed attempt's debit stands: the estimate was admitted and the tier
may have consumed capacity before failing.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import litellm
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from econ_router.cache.backend import response_cache_key
from econ_router.middleware.prometheus import record_llm_request
from econ_router.routing.errors import DispatchError
from econ_router.routing.tiers import TierId

if TYPE_CHECKING:
    from econ_router.cache.backend import CacheBackend
    from econ_router.config import Settings
    from econ_router.routing.metrics import RoutingMetrics
    from econ_router.routing.router import InferenceRequest, RoutingDecision, TierRouter
    from econ_router.routing.runtime import RuntimeConfigHolder
    from econ_router.routing.tiers import Tier, TierRegistry

log = structlog.get_logger(__name__)

# Retried on the same tier
_RETRYABLE = (litellm.exceptions.RateLimitError,)

# Take the tier out of rotation and reroute
_TRANSPORT = (
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.Timeout,
    litellm.exceptions.InternalServerError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class InferenceResult:
    """What the inference endpoint returns for one request.

    Attributes:
        decision: The final admitted decision
        output: Completion text (None when execution was not requested)
        cached: Served from the response cache
        attempts: Routing decisions made for this request
        failed_tiers: Tiers that failed at transport level, in order
    """

    decision: RoutingDecision
    output: str | None = None
    cached: bool = False
    attempts: int = 1
    failed_tiers: list[str] = field(default_factory=list)


class TierDispatcher:
    """Routes and optionally executes requests against their tiers."""

    def __init__(
        self,
        router: TierRouter,
        registry: TierRegistry,
        config: RuntimeConfigHolder,
        metrics: RoutingMetrics,
        *,
        cache: CacheBackend | None = None,
        cache_ttl: int = 3600,
        max_attempts: int = 2,
        timeout: float = 30.0,
        api_key: str | None = None,
    ) -> None:
        self._router = router
        self._registry = registry
        self._config = config
        self._metrics = metrics
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._max_attempts = max_attempts
        self._timeout = timeout
        self._api_key = api_key
        self._inflight: dict[str, asyncio.Future[str]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        router: TierRouter,
        registry: TierRegistry,
        config: RuntimeConfigHolder,
        metrics: RoutingMetrics,
        *,
        cache: CacheBackend | None = None,
    ) -> TierDispatcher:
        return cls(
            router,
            registry,
            config,
            metrics,
            cache=cache,
            cache_ttl=settings.cache_ttl_seconds,
            max_attempts=settings.dispatch_max_attempts,
            timeout=settings.dispatch_timeout_seconds,
            api_key=settings.litellm_api_key.get_secret_value(),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle(self, request: InferenceRequest, *, execute: bool = False) -> InferenceResult:
        """Route ``request`` and, if asked, run it on the chosen tier.

        Raises:
            BudgetExceeded, TierUnavailable: From the router
            DispatchError: Every attempted tier failed
        """
        if not execute:
            return InferenceResult(decision=await self._router.route(request))

        config = self._config.get()
        cache_key = response_cache_key(request.task_type, request.prompt)
        if config.caching_enabled and self._cache is not None:
            hit = await self._cache.get(cache_key)
            self._metrics.record_cache_lookup(hit is not None)
            if hit is not None:
                decision = self._router.cached_decision(request, hit["tier"])
                return InferenceResult(decision=decision, output=hit["output"], cached=True)

        failed: list[str] = []
        excluded: set[TierId] = set()
        for attempt in range(1, self._max_attempts + 1):
            decision = await self._router.route(request, exclude=frozenset(excluded))
            if failed:
                self._metrics.record_fallback(failed[-1], decision.tier.value)
            tier = self._registry.get(decision.tier)
            try:
                output = await self._run(
                    tier, request.prompt, decision.output_tokens, config.batching_enabled
                )
            except _TRANSPORT as exc:
                log.warning(
                    "dispatch.tier_failed",
                    request_id=request.request_id,
                    tier=tier.tier_id.value,
                    attempt=attempt,
                    error=str(exc),
                )
                self._registry.mark_unavailable(tier.tier_id, f"dispatch: {type(exc).__name__}")
                excluded.add(tier.tier_id)
                failed.append(tier.tier_id.value)
                continue

            if config.caching_enabled and self._cache is not None:
                await self._cache.set(
                    cache_key, {"tier": tier.tier_id.value, "output": output}, self._cache_ttl
                )
            return InferenceResult(
                decision=decision, output=output, attempts=attempt, failed_tiers=failed
            )

        raise DispatchError(
            failed,
            f"Execution failed on every attempted tier: {', '.join(failed)}",
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, tier: Tier, prompt: str, max_tokens: int, coalesce: bool) -> str:
        if not coalesce:
            return await self._complete(tier, prompt, max_tokens)

        key = f"{tier.tier_id.value}:{response_cache_key('', prompt)}"
        pending = self._inflight.get(key)
        if pending is not None:
            log.debug("dispatch.coalesced", tier=tier.tier_id.value)
            return await asyncio.shield(pending)

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            output = await self._complete(tier, prompt, max_tokens)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unawaited failure does not warn
            future.exception()
            raise
        else:
            future.set_result(output)
            return output
        finally:
            self._inflight.pop(key, None)

    async def _complete(self, tier: Tier, prompt: str, max_tokens: int) -> str:
        start = time.perf_counter()
        try:
            response = await self._acompletion(tier, prompt, max_tokens)
        except Exception:
            record_llm_request(tier.tier_id.value, "error", time.perf_counter() - start)
            raise
        record_llm_request(tier.tier_id.value, "success", time.perf_counter() - start)

        usage = getattr(response, "usage", None)
        if usage:
            log.info(
                "dispatch.completion_done",
                tier=tier.tier_id.value,
                model=tier.model_id,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        return self.extract_text(response)

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _acompletion(self, tier: Tier, prompt: str, max_tokens: int) -> Any:
        kwargs: dict[str, Any] = {}
        if tier.api_base:
            kwargs["api_base"] = tier.api_base
        if self._api_key and tier.tier_id != TierId.LOCAL:
            kwargs["api_key"] = self._api_key
        return await litellm.acompletion(
            model=tier.model_id,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max(1, max_tokens),
            timeout=self._timeout,
            **kwargs,
        )

    @staticmethod
    def extract_text(response: Any) -> str:
        """Extract the assistant text content from a completion response."""
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError):
            return ""
