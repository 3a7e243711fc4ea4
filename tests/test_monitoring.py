"""Tests for rolling metrics, recommendations and the monitor pass."""
from datetime import timedelta

import pytest

from src.coordinator.records import ExecutionStatus
from src.monitoring.manager import AlertManager
from src.monitoring.metrics import ALL_CATEGORIES, ExecutionStats, MetricsAggregator
from src.monitoring.monitor import Monitor
from src.monitoring.recommendations import (
    RecommendationEngine,
    RecommendationPriority,
    RecommendationRepository,
    pool_recommendations,
)
from src.monitoring.rules import default_rules


def finish(records, record, status, when, **details):
    records.apply_status(record.execution_id, status, when, **details)


class TestMetricsAggregator:
    """Tests for MetricsAggregator."""

    def test_windows_split_by_completion_time(self, db, records, make_record, now):
        recent = make_record("seo_monitor")
        finish(records, recent, ExecutionStatus.COMPLETED, now - timedelta(seconds=30),
               actual_duration_ms=2000, actual_cost=0.05)
        older = make_record("seo_monitor")
        finish(records, older, ExecutionStatus.FAILED, now - timedelta(minutes=20))

        metrics = MetricsAggregator(db).collect(now, ["seo_monitor", "content_pipeline"])

        seo = metrics["seo_monitor"]
        assert seo["1m"].completed == 1
        assert seo["5m"].terminal == 1
        assert seo["1h"].terminal == 2
        assert seo["1h"].success_rate == pytest.approx(0.5)
        assert seo["1h"].mean_duration_ms == pytest.approx(2000)
        assert seo["1h"].throughput_per_minute == pytest.approx(2 / 60)
        assert metrics["content_pipeline"]["1h"].terminal == 0
        assert metrics[ALL_CATEGORIES]["1h"].error_count == 1

    def test_cost_falls_back_to_estimate(self, db, records, make_record, now):
        record = make_record("revenue_optimizer", estimated_cost=0.4)
        finish(records, record, ExecutionStatus.COMPLETED, now)
        hour = MetricsAggregator(db).collect(now)["revenue_optimizer"]["1h"]
        assert hour.cost == pytest.approx(0.4)

    def test_execution_stats(self, db, records, make_record, now):
        done = make_record()
        finish(records, done, ExecutionStatus.COMPLETED, now, actual_cost=0.1, actual_duration_ms=1000)
        failed = make_record()
        finish(records, failed, ExecutionStatus.TIMEOUT, now)
        make_record()

        stats = MetricsAggregator(db).execution_stats(now + timedelta(minutes=1))

        assert stats.total == 3
        assert stats.pending == 1
        assert stats.timed_out == 1
        assert stats.success_rate == pytest.approx(0.5)
        assert stats.total_cost == pytest.approx(0.1)


class TestRecommendations:
    """Tests for RecommendationEngine and pool advice."""

    def test_healthy_system_gets_one_low_priority_note(self, settings, pools, now):
        recs = RecommendationEngine(settings).generate(ExecutionStats(), {}, pools.snapshot(now), now)
        assert [r.rec_type for r in recs] == ["optimization"]
        assert recs[0].priority == RecommendationPriority.LOW

    def test_low_success_rate(self, settings, now):
        stats = ExecutionStats(total=10, completed=8, failed=2)
        recs = RecommendationEngine(settings).generate(stats, {}, None, now)
        assert recs[0].rec_type == "reliability"
        assert recs[0].priority == RecommendationPriority.CRITICAL

    def test_slow_executions(self, settings, now):
        stats = ExecutionStats(total=1, completed=1, avg_duration_ms=400_000)
        recs = RecommendationEngine(settings).generate(stats, {}, None, now)
        assert [r.rec_type for r in recs] == ["performance"]

    def test_category_below_floor(self, settings, db, records, make_record, now):
        for status in (ExecutionStatus.FAILED, ExecutionStatus.FAILED, ExecutionStatus.FAILED, ExecutionStatus.COMPLETED):
            finish(records, make_record("seo_monitor"), status, now)
        metrics = MetricsAggregator(db).collect(now)

        recs = RecommendationEngine(settings).generate(ExecutionStats(), metrics, None, now)

        by_type = {r.rec_type: r for r in recs}
        assert by_type["shrink_batch"].category == "seo_monitor"
        assert by_type["throttle_category"].metric_value == 3.0

    def test_pool_advice(self, settings, pools, now):
        pools.reserve({"budget": 0.9 * settings.daily_budget, "connections": 15}, now=now)
        pools.set_availability("memory", False, now)

        recs = {r.resource_type: r for r in pool_recommendations(pools.snapshot(now))}

        assert recs["budget"].rec_type == "budget_optimization"
        assert recs["budget"].priority == RecommendationPriority.CRITICAL
        assert recs["connections"].rec_type == "system_optimization"
        assert recs["memory"].rec_type == "pool_recovery"
        assert "external_calls" not in recs

    def test_repository_keeps_newest_first(self, settings, db, now):
        repo = RecommendationRepository(db)
        engine = RecommendationEngine(settings)
        repo.save(engine.generate(ExecutionStats(), {}, None, now))
        repo.save(engine.generate(ExecutionStats(total=4, completed=1, failed=3), {}, None, now))

        latest = repo.latest()
        assert latest[0].rec_type == "reliability"
        assert latest[-1].rec_type == "optimization"


class TestMonitor:
    """Tests for the end-of-tick monitoring pass."""

    @pytest.fixture
    def monitor(self, db, settings, pools, queue, error_log):
        manager = AlertManager(db, rules=default_rules(settings), error_log=error_log)
        return Monitor(db, settings, pools, manager, queue)

    @pytest.mark.asyncio
    async def test_record_tick_samples_and_saves(self, monitor, pools, now):
        report = await monitor.record_tick(now)

        assert set(report.metrics) >= {"content_pipeline", ALL_CATEGORIES}
        assert report.snapshot is not None
        assert report.alerts.raised == []
        assert [r.rec_type for r in report.recommendations] == ["optimization"]
        assert pools.recent_samples("budget")[0]["used_amount"] == 0

    @pytest.mark.asyncio
    async def test_fault_raises_alert(self, monitor, now):
        report = await monitor.record_tick(now, fault={"message": "boom", "step": "dispatch"})
        assert [a.alert_type for a in report.alerts.raised] == ["CoordinatorFault"]

    @pytest.mark.asyncio
    async def test_admission_advice_replaces_fallback(self, monitor, pools, settings, now):
        pools.reserve({"budget": 0.8 * settings.daily_budget}, now=now)
        advice = pool_recommendations(pools.snapshot(now))

        report = await monitor.record_tick(now, extra_recommendations=advice)

        types = [r.rec_type for r in report.recommendations]
        assert types[0] == "budget_optimization"
        assert "optimization" not in types

    def test_dashboard(self, monitor, make_record, now):
        make_record()
        summary = monitor.dashboard(now)
        assert summary["executions"]["pending"] == 1
        assert summary["queue"]["depth"] == 0
        assert summary["open_alerts"] == []
