"""Tests for budget alert sinks and the BudgetNotifier fan-out."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from econ_router.config import Settings
from econ_router.routing.alerts import (
    AlertSink,
    BudgetNotifier,
    LogAlertSink,
    RedisAlertSink,
    WebhookAlertSink,
)
from econ_router.routing.budget import AlertLevel, BudgetAlert, PeriodKind


def _alert(level: AlertLevel = AlertLevel.WARNING, owner: str = "proj-a") -> BudgetAlert:
    moment = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
    return BudgetAlert(
        owner=owner,
        kind=PeriodKind.DAILY,
        level=level,
        utilization=0.85,
        spent=8.5,
        ceiling=10.0,
        period_start=datetime(2026, 3, 10, tzinfo=UTC),
        raised_at=moment,
    )


class RecordingSink(AlertSink):
    name = "recording"

    def __init__(self) -> None:
        self.alerts: list[BudgetAlert] = []
        self.closed = False

    async def send(self, alert: BudgetAlert) -> None:
        self.alerts.append(alert)

    async def close(self) -> None:
        self.closed = True


class FailingSink(AlertSink):
    name = "failing"

    async def send(self, alert: BudgetAlert) -> None:
        raise httpx.ConnectError("webhook unreachable")


# ------------------------------------------------------------------ #
# BudgetNotifier
# ------------------------------------------------------------------ #


async def test_dispatch_delivers_to_every_sink():
    first, second = RecordingSink(), RecordingSink()
    notifier = BudgetNotifier(sinks=[first, second])
    alert = _alert()

    notifier.dispatch([alert])
    await notifier.drain()

    assert first.alerts == [alert]
    assert second.alerts == [alert]
    assert notifier.sent == [alert]


async def test_failing_sink_does_not_block_others():
    recording = RecordingSink()
    notifier = BudgetNotifier(sinks=[FailingSink(), recording])

    notifier.dispatch([_alert(), _alert(AlertLevel.CRITICAL)])
    await notifier.drain()

    assert [a.level for a in recording.alerts] == [AlertLevel.WARNING, AlertLevel.CRITICAL]


async def test_close_drains_and_closes_sinks():
    sink = RecordingSink()
    notifier = BudgetNotifier(sinks=[sink])

    notifier.dispatch([_alert()])
    await notifier.close()

    assert len(sink.alerts) == 1
    assert sink.closed is True


def test_default_notifier_logs_alerts():
    assert BudgetNotifier()._sinks[0].name == "log"


def test_from_settings_builds_configured_sinks():
    settings = Settings(
        alert_webhook_url="https://hooks.example.com/budget",
        alert_redis_channel="budget-alerts",
    )

    notifier = BudgetNotifier.from_settings(settings)

    assert [sink.name for sink in notifier._sinks] == ["log", "webhook", "redis"]


def test_from_settings_without_destinations_only_logs():
    notifier = BudgetNotifier.from_settings(Settings())

    assert [sink.name for sink in notifier._sinks] == ["log"]


# ------------------------------------------------------------------ #
# Sinks
# ------------------------------------------------------------------ #


async def test_log_sink_accepts_both_levels():
    sink = LogAlertSink()

    await sink.send(_alert(AlertLevel.WARNING))
    await sink.send(_alert(AlertLevel.CRITICAL))


async def test_webhook_sink_posts_slack_and_teams_fields():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookAlertSink("https://hooks.example.com/budget", client=client)
        await sink.send(_alert())

    assert len(captured) == 1
    body = json.loads(captured[0].content)
    assert body["title"] == "Budget warning: proj-a daily"
    assert "85.0%" in body["text"]
    assert "$8.50 of $10.00" in body["text"]
    assert body["alert"]["owner"] == "proj-a"
    assert body["alert"]["utilization_pct"] == 85.0


async def test_webhook_sink_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookAlertSink("https://hooks.example.com/budget", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await sink.send(_alert())


async def test_redis_sink_publishes_json():
    client = AsyncMock()
    client.publish.return_value = 2
    sink = RedisAlertSink("redis://localhost:6379/0", "budget-alerts", client=client)

    await sink.send(_alert())

    channel, payload = client.publish.await_args.args
    assert channel == "budget-alerts"
    assert json.loads(payload)["level"] == "warning"

    await sink.close()
    client.aclose.assert_awaited_once()


async def test_redis_failure_is_logged_not_raised():
    client = AsyncMock()
    client.publish.side_effect = RedisConnectionError("redis down")
    sink = RedisAlertSink("redis://localhost:6379/0", "budget-alerts", client=client)
    notifier = BudgetNotifier(sinks=[sink])

    notifier.dispatch([_alert()])
    await notifier.drain()

    client.publish.assert_awaited_once()
