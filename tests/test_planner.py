"""Tests for the execution planner."""
from datetime import timedelta

import pytest

from src.core.config import CategoryConfig, DEFAULT_CATEGORIES
from src.core.errors import ErrorKind
from src.resources.pools import ResourcePoolTracker
from src.scheduling.admission import AdmissionController
from src.scheduling.planner import ExecutionPlanner, ExecutionStrategy
from src.scheduling.scheduler import PriorityScheduler


def admitted(settings, pools, now):
    candidates = PriorityScheduler(settings).schedule({}, now)
    return AdmissionController(settings).evaluate(candidates, pools.snapshot(now))


class TestExecutionPlanner:
    """Tests for ExecutionPlanner.build."""

    def test_three_tasks_are_staggered(self, settings, pools, now):
        """Three tasks with a 30 second gap start at 0s, 30s and 60s."""
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now, available_slots=3)

        assert len(plan.tasks) == 3
        assert [t.start_offset_seconds for t in plan.tasks] == [0, 30, 60]
        assert [t.execution_order for t in plan.tasks] == [1, 2, 3]
        assert [t.category_id for t in plan.tasks] == [
            "content_pipeline", "seo_monitor", "revenue_optimizer"
        ]
        assert plan.strategy == ExecutionStrategy.SEQUENTIAL_WITH_OVERLAP

    def test_slot_limit_drops_the_rest(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now, available_slots=3)
        assert [d.category_id for d in plan.dropped] == ["intelligence_engine"]
        assert plan.dropped[0].error_kind == ErrorKind.RESOURCE_EXHAUSTION

    def test_zero_slots_plans_nothing(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now, available_slots=0)
        assert plan.is_empty
        assert plan.efficiency_score == 0.0
        assert plan.strategy == ExecutionStrategy.NONE
        assert len(plan.dropped) == 4

    def test_aggregator_depends_on_planned_categories(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now)
        intelligence = plan.tasks[-1]
        assert intelligence.category_id == "intelligence_engine"
        assert set(intelligence.dependencies) == {"content_pipeline", "seo_monitor", "revenue_optimizer"}
        assert all(not t.dependencies for t in plan.tasks[:-1])

    def test_aggregator_waits_even_when_ranked_first(self, make_settings, db, now):
        boosted = tuple(
            c.model_copy(update={"base_priority": 100}) if c.is_aggregator else c
            for c in DEFAULT_CATEGORIES
        )
        settings = make_settings(categories=boosted)
        tracker = ResourcePoolTracker(db, settings)
        tracker.ensure_pools(now)

        candidates = PriorityScheduler(settings).schedule({}, now)
        assert candidates[0].category_id == "intelligence_engine"

        admission = AdmissionController(settings).evaluate(candidates, tracker.snapshot(now))
        plan = ExecutionPlanner(settings).build(admission, "worker-a", now)

        order = [t.category_id for t in plan.tasks]
        assert order[-1] == "intelligence_engine"
        assert plan.tasks[-1].start_offset_seconds == 90

    def test_totals_and_efficiency(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now)
        # content 1 item, seo 5 items, revenue 10 items, intelligence 1 item
        assert plan.total_cost == pytest.approx(0.15 + 0.25 + 1.0 + 0.25)
        assert plan.total_calls == 3 + 5 + 5
        assert plan.total_memory_mb == 512 + 128 + 1024
        assert plan.efficiency_score == pytest.approx(4 / 1.65)
        assert plan.estimated_completion == now + timedelta(milliseconds=plan.total_duration_ms)

    def test_risk_flags(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now)
        assert plan.risk.resource_risk  # 1664 MB > 1500 MB
        assert plan.risk.timing_risk    # 630 s of work in a 300 s tick
        assert not plan.risk.cost_risk
        assert plan.risk.overall == "high"

    def test_low_risk_single_task(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now, available_slots=1)
        assert plan.strategy == ExecutionStrategy.SINGLE
        assert plan.risk.overall == "low"

    def test_batch_cut_to_remaining_budget(self, make_settings, db, now):
        settings = make_settings(daily_budget=0.5)
        tracker = ResourcePoolTracker(db, settings)
        tracker.ensure_pools(now)
        plan = ExecutionPlanner(settings).build(
            AdmissionController(settings).evaluate(PriorityScheduler(settings).schedule({}, now), tracker.snapshot(now)),
            "worker-a",
            now,
        )
        # content takes 0.15, seo 0.25, leaving too little for intelligence
        assert plan.total_cost <= 0.5 + 1e-9
        assert [t.category_id for t in plan.tasks] == ["content_pipeline", "seo_monitor"]
        assert [d.category_id for d in plan.dropped] == ["intelligence_engine"]

    def test_remaining_quota_cuts_batch(self, settings, pools, now):
        pools.reserve({"external_calls": 50}, now=now)  # 83%: warning, admitted
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now)

        by_category = {t.category_id: t for t in plan.tasks}
        assert by_category["content_pipeline"].batch_size == 1   # 3 calls, 7 left
        assert by_category["seo_monitor"].batch_size == 5        # 5 calls, 2 left
        assert "intelligence_engine" not in by_category          # needs 5
        dropped = {d.category_id: d for d in plan.dropped}
        assert dropped["intelligence_engine"].error_kind == ErrorKind.RESOURCE_EXHAUSTION

    def test_timeouts_include_offset_and_duration(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now, available_slots=2)
        second = plan.tasks[1]
        assert second.timeout_at == now + timedelta(seconds=30, milliseconds=second.estimated_duration_ms)

    def test_reservation_only_covers_mapped_pools(self, settings, pools, now):
        plan = ExecutionPlanner(settings).build(admitted(settings, pools, now), "worker-a", now)
        revenue = next(t for t in plan.tasks if t.category_id == "revenue_optimizer")
        assert set(revenue.reservation) == {"budget", "memory"}
        totals = plan.reservation_totals()
        assert totals["external_calls"] == pytest.approx(13)

    def test_plan_ids_are_unique(self, settings, pools, now):
        planner = ExecutionPlanner(settings)
        admission = admitted(settings, pools, now)
        assert planner.build(admission, "w", now).plan_id != planner.build(admission, "w", now).plan_id


def test_custom_category_without_pools(make_settings, db, now):
    free = CategoryConfig(
        category_id="sitemap_refresh",
        base_interval_minutes=30,
        base_priority=70,
        max_batch_size=3,
        cost_per_item=0.0,
        estimated_duration_ms=1000,
        success_rate_floor=0.5,
    )
    settings = make_settings(categories=(free,))
    tracker = ResourcePoolTracker(db, settings)
    tracker.ensure_pools(now)
    admission = AdmissionController(settings).evaluate(PriorityScheduler(settings).schedule({}, now), tracker.snapshot(now))

    plan = ExecutionPlanner(settings).build(admission, "worker-a", now)

    assert [t.category_id for t in plan.tasks] == ["sitemap_refresh"]
    assert plan.tasks[0].reservation == {}
    assert plan.efficiency_score == 1.0
