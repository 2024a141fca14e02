"""Budget alert delivery.

Alerts are produced by the ledger while the router holds its locks and are
handed to the BudgetNotifier after the locks are released. Delivery is
fire-and-forget: every sink runs in its own background task, failures are
logged and never reach the request path.

Sinks:
- LogAlertSink: structured log entry, always on
- WebhookAlertSink: HTTP POST to any webhook URL (Slack, Teams, custom)
- RedisAlertSink: PUBLISH to a Redis pub/sub channel
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Any

import httpx
import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from econ_router.middleware.prometheus import record_budget_alert
from econ_router.routing.budget import AlertLevel

if TYPE_CHECKING:
    from econ_router.config import Settings
    from econ_router.routing.budget import BudgetAlert

log = structlog.get_logger(__name__)


class AlertSink(ABC):
    """A destination for budget alerts."""

    name: str = "sink"

    @abstractmethod
    async def send(self, alert: BudgetAlert) -> None:
        """Deliver one alert. May raise; the notifier logs failures."""

    async def close(self) -> None:
        return None


class LogAlertSink(AlertSink):
    name = "log"

    async def send(self, alert: BudgetAlert) -> None:
        emit = log.error if alert.level == AlertLevel.CRITICAL else log.warning
        emit("budget_alert.raised", **alert.to_dict())


class WebhookAlertSink(AlertSink):
    """POST alerts as JSON.

    The payload carries a ``text`` field (Slack incoming webhooks) and a
    ``title`` field (Teams message cards) next to the structured alert.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    @staticmethod
    def _payload(alert: BudgetAlert) -> dict[str, Any]:
        title = f"Budget {alert.level.value}: {alert.owner} {alert.kind.value}"
        text = (
            f"{alert.owner} has used {alert.utilization * 100:.1f}% of its "
            f"{alert.kind.value} budget (${alert.spent:.2f} of ${alert.ceiling:.2f})."
        )
        return {"title": title, "text": text, "alert": alert.to_dict()}

    async def send(self, alert: BudgetAlert) -> None:
        payload = self._payload(alert)
        if self._client is not None:
            response = await self._client.post(self._url, json=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload)
        response.raise_for_status()
        log.info("budget_alert.webhook_sent", owner=alert.owner, status_code=response.status_code)


class RedisAlertSink(AlertSink):
    """PUBLISH alerts as JSON to a Redis channel."""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        channel: str,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._channel = channel
        self._client = client

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def send(self, alert: BudgetAlert) -> None:
        receivers = await self._get_client().publish(self._channel, json.dumps(alert.to_dict()))
        log.debug("budget_alert.published", channel=self._channel, receivers=receivers)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class BudgetNotifier:
    """Fans alerts out to every sink without blocking the caller.

    Instantiate with explicit sinks (useful for testing), or call
    ``BudgetNotifier.from_settings()`` to build them from the app config.
    """

    def __init__(self, sinks: list[AlertSink] | None = None, history_size: int = 100) -> None:
        self._sinks = sinks if sinks is not None else [LogAlertSink()]
        self._tasks: set[asyncio.Task[None]] = set()
        self._sent: deque[BudgetAlert] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(cls, settings: Settings) -> BudgetNotifier:
        sinks: list[AlertSink] = [LogAlertSink()]
        if settings.alert_webhook_url:
            sinks.append(WebhookAlertSink(settings.alert_webhook_url))
        if settings.alert_redis_channel:
            sinks.append(RedisAlertSink(settings.redis_url, settings.alert_redis_channel))
        log.info("budget_notifier.configured", sinks=[sink.name for sink in sinks])
        return cls(sinks)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def sent(self) -> list[BudgetAlert]:
        """Most recent alerts handed to the sinks, oldest first."""
        return list(self._sent)

    def dispatch(self, alerts: list[BudgetAlert]) -> None:
        """Schedule delivery of ``alerts`` on every sink and return immediately."""
        for alert in alerts:
            self._sent.append(alert)
            record_budget_alert(alert.level.value, alert.kind.value)
            for sink in self._sinks:
                task = asyncio.create_task(self._deliver(sink, alert))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sink: AlertSink, alert: BudgetAlert) -> None:
        try:
            await sink.send(alert)
        except (httpx.HTTPError, RedisError, OSError) as exc:
            log.error(
                "budget_notifier.delivery_failed",
                sink=sink.name,
                owner=alert.owner,
                level=alert.level.value,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used at shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for sink in self._sinks:
            await sink.close()
