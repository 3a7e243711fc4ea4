"""
Tests for coordinator alerting.

Covers:
- Alert rules over rolling metrics and pool state
- AlertManager persistence, deduplication and auto-resolution
- Notifier delivery and failure recording
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from src.core.errors import ErrorKind
from src.monitoring.alerts import Alert, AlertSeverity, AlertStatus
from src.monitoring.manager import AlertManager
from src.monitoring.metrics import ALL_CATEGORIES, MetricWindow, WindowMetrics
from src.monitoring.notifiers import LogNotifier, WebhookNotifier
from src.monitoring.rules import (
    CoordinatorFault,
    CostSpike,
    HighErrorCount,
    LowSuccessRate,
    MetricContext,
    PoolUtilization,
    SlowExecution,
    default_rules,
)


def hour(category, **counts):
    return {"1h": WindowMetrics(category=category, window=MetricWindow.ONE_HOUR, **counts)}


def context_with(now, **by_category):
    return MetricContext(now=now, metrics={name: hour(name, **counts) for name, counts in by_category.items()})


class TestAlertRules:
    """Test alert rule evaluation."""

    def test_low_success_rate_levels(self, now):
        rule = LowSuccessRate(warning=0.95, critical=0.90)
        context = context_with(
            now,
            seo_monitor={"completed": 9, "failed": 1},
            content_pipeline={"completed": 8, "failed": 2},
            revenue_optimizer={"completed": 10},
        )

        alerts = {a.category: a for a in rule.evaluate(context)}

        assert alerts["seo_monitor"].severity == AlertSeverity.WARNING
        assert alerts["content_pipeline"].severity == AlertSeverity.CRITICAL
        assert "revenue_optimizer" not in alerts

    def test_low_success_rate_needs_samples(self, now):
        context = context_with(now, seo_monitor={"failed": 2})
        assert LowSuccessRate(min_samples=3).evaluate(context) == []

    def test_high_error_count(self, now):
        rule = HighErrorCount(warning=3, critical=5)
        context = context_with(
            now,
            seo_monitor={"failed": 2, "timed_out": 1},
            content_pipeline={"failed": 5},
            revenue_optimizer={"failed": 2},
        )

        alerts = {a.category: a for a in rule.evaluate(context)}

        assert alerts["seo_monitor"].severity == AlertSeverity.WARNING
        assert alerts["content_pipeline"].severity == AlertSeverity.CRITICAL
        assert "revenue_optimizer" not in alerts

    def test_slow_execution(self, now):
        context = context_with(
            now,
            intelligence_engine={"completed": 2, "total_duration_ms": 800_000, "duration_samples": 2},
        )
        alerts = SlowExecution(threshold_ms=300_000).evaluate(context)
        assert len(alerts) == 1
        assert alerts[0].metric_value == pytest.approx(400_000)

    def test_cost_spike_uses_system_total(self, now):
        context = MetricContext(now=now, metrics={ALL_CATEGORIES: hour(ALL_CATEGORIES, completed=50, cost=60.0)})
        alerts = CostSpike(warning=25, critical=50).evaluate(context)
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].category is None

    def test_pool_utilization(self, pools, settings, now):
        pools.reserve({"external_calls": 0.95 * settings.external_call_quota, "budget": 0.75 * settings.daily_budget}, now=now)
        alerts = {a.category: a for a in PoolUtilization().evaluate(MetricContext(now=now, snapshot=pools.snapshot(now)))}

        assert alerts["external_calls"].severity == AlertSeverity.CRITICAL
        assert alerts["budget"].severity == AlertSeverity.WARNING
        assert "memory" not in alerts

    def test_coordinator_fault(self, now):
        rule = CoordinatorFault()
        assert rule.evaluate(MetricContext(now=now)) == []
        alerts = rule.evaluate(MetricContext(now=now, tick_fault={"message": "disk full", "step": "dispatch"}))
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].metadata["step"] == "dispatch"

    def test_default_rules_follow_settings(self, make_settings):
        rules = {r.name: r for r in default_rules(make_settings(error_count_warning=7))}
        assert rules["HighErrorCount"].warning == 7
        assert len(rules) == 6


class TestAlertManager:
    """Test AlertManager coordination."""

    @pytest.mark.asyncio
    async def test_raises_and_notifies(self, db, now):
        notifier = AsyncMock()
        notifier.notify.return_value = True
        manager = AlertManager(db, rules=[HighErrorCount()], notifiers=[notifier])

        evaluation = await manager.evaluate(context_with(now, seo_monitor={"failed": 4}))

        assert len(evaluation.raised) == 1
        notifier.notify.assert_awaited_once()
        stored = manager.open_alerts()
        assert stored[0].category == "seo_monitor"
        assert stored[0].timestamp == now
        assert manager.get_stats()["notifications_sent"] == 1

    @pytest.mark.asyncio
    async def test_open_alert_is_deduplicated(self, db, now):
        notifier = AsyncMock()
        notifier.notify.return_value = True
        manager = AlertManager(db, rules=[HighErrorCount()], notifiers=[notifier])

        await manager.evaluate(context_with(now, seo_monitor={"failed": 3}))
        second = await manager.evaluate(context_with(now, seo_monitor={"failed": 6}))

        assert second.raised == []
        assert len(second.deduplicated) == 1
        assert notifier.notify.await_count == 1
        (alert,) = manager.open_alerts()
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata["occurrences"] == 2

    @pytest.mark.asyncio
    async def test_clear_condition_resolves(self, db, now):
        manager = AlertManager(db, rules=[HighErrorCount()])
        await manager.evaluate(context_with(now, seo_monitor={"failed": 3}))

        evaluation = await manager.evaluate(context_with(now, seo_monitor={"completed": 3}))

        assert len(evaluation.resolved) == 1
        assert evaluation.resolved[0].status == AlertStatus.RESOLVED
        assert manager.open_alerts() == []

    @pytest.mark.asyncio
    async def test_failing_rule_is_skipped(self, db, error_log, now):
        broken = HighErrorCount()
        broken.evaluate = lambda context: 1 / 0
        manager = AlertManager(db, rules=[broken, CoordinatorFault()], error_log=error_log)

        evaluation = await manager.evaluate(MetricContext(now=now, tick_fault={"message": "boom"}))

        assert [a.alert_type for a in evaluation.raised] == ["CoordinatorFault"]
        assert "HighErrorCount" in error_log.recent(ErrorKind.SYSTEM_FAULT)[0].message

    @pytest.mark.asyncio
    async def test_notifier_failure_is_recorded(self, db, error_log, now):
        failing = AsyncMock()
        failing.notify.side_effect = ConnectionError("unreachable")
        manager = AlertManager(db, rules=[CoordinatorFault()], notifiers=[failing, LogNotifier()], error_log=error_log)

        evaluation = await manager.evaluate(MetricContext(now=now, tick_fault={"message": "boom"}))

        assert len(evaluation.raised) == 1
        stats = manager.get_stats()
        assert stats["notification_failures"] == 1
        assert stats["notifications_sent"] == 1
        entry = error_log.recent(ErrorKind.TRANSIENT_EXECUTION_FAILURE)[0]
        assert entry.context["alert_id"] == evaluation.raised[0].alert_id


class TestWebhookNotifier:
    """Test webhook delivery over a mocked transport."""

    @pytest.mark.asyncio
    async def test_posts_alert_json(self, now):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200)

        notifier = WebhookNotifier("https://hooks.example.test/alerts", transport=httpx.MockTransport(handler))
        alert = Alert(alert_type="CostSpike", severity=AlertSeverity.WARNING, message="spend", timestamp=now)

        assert await notifier.notify(alert) is True
        assert seen[0]["alert_type"] == "CostSpike"
        assert seen[0]["severity"] == "warning"

    @pytest.mark.asyncio
    async def test_error_status_is_failure(self, now):
        notifier = WebhookNotifier(
            "https://hooks.example.test/alerts",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        alert = Alert(alert_type="CostSpike", severity=AlertSeverity.WARNING, message="spend", timestamp=now)
        assert await notifier.notify(alert) is False

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        notifier = WebhookNotifier("https://hooks.example.test/alerts", transport=httpx.MockTransport(handler))
        alert = Alert(alert_type="CostSpike", severity=AlertSeverity.WARNING, message="spend", timestamp=now)
        assert await notifier.notify(alert) is False


def test_alert_dict_round_trip(now):
    alert = Alert(
        alert_type="PoolUtilization",
        severity=AlertSeverity.CRITICAL,
        message="Pool memory is critical",
        category="memory",
        metric_value=0.93,
        threshold=0.9,
        timestamp=now,
    )
    restored = Alert.from_dict(alert.to_dict())
    assert restored == alert
