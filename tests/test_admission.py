"""Tests for the admission controller."""
from dataclasses import replace

import pytest

from src.core.errors import ErrorKind
from src.resources.pools import PoolStatus, ResourcePoolTracker
from src.scheduling.admission import AdmissionController
from src.scheduling.scheduler import CategoryStats, PriorityScheduler


@pytest.fixture
def candidates(settings, now):
    """Every default category, never run, at a peak hour: all want to run."""
    return PriorityScheduler(settings).schedule({}, now)


class TestAdmissionController:
    """Tests for AdmissionController."""

    def test_all_feasible_on_fresh_pools(self, settings, pools, candidates, now):
        result = AdmissionController(settings).evaluate(candidates, pools.snapshot(now))
        assert [d.category_id for d in result.feasible] == [c.category_id for c in candidates]
        assert all(d.admitted_batch_size == d.candidate.batch_size for d in result.feasible)

    def test_critical_pool_blocks_every_mapped_category(self, settings, pools, candidates, now):
        """External call quota at 95% blocks every category that uses it."""
        pools.reserve({"external_calls": 0.95 * settings.external_call_quota}, now=now)
        snapshot = pools.snapshot(now)
        assert snapshot.status_of("external_calls") == PoolStatus.CRITICAL

        result = AdmissionController(settings).evaluate(candidates, snapshot)

        blocked = {d.category_id for d in result.infeasible}
        mapped = {
            c.category_id for c in settings.categories if "external_calls" in c.resource_pools
        }
        assert blocked == mapped
        for decision in result.infeasible:
            assert decision.error_kind == ErrorKind.RESOURCE_EXHAUSTION
            assert "external_calls" in decision.blocking_pools
        assert [d.category_id for d in result.feasible] == ["revenue_optimizer"]

    def test_unavailable_pool_blocks(self, settings, pools, candidates, now):
        pools.set_availability("memory", False, now)
        result = AdmissionController(settings).evaluate(candidates, pools.snapshot(now))
        blocked = {d.category_id for d in result.infeasible}
        assert blocked == {"content_pipeline", "revenue_optimizer", "intelligence_engine"}

    def test_cost_above_remaining_budget(self, make_settings, db, now):
        settings = make_settings(daily_budget=0.9)
        tracker = ResourcePoolTracker(db, settings)
        tracker.ensure_pools(now)
        candidates = PriorityScheduler(settings).schedule({}, now)

        result = AdmissionController(settings).evaluate(candidates, tracker.snapshot(now))

        revenue = next(d for d in result.decisions if d.category_id == "revenue_optimizer")
        assert not revenue.feasible
        assert revenue.blocking_pools == ("budget",)
        content = next(d for d in result.decisions if d.category_id == "content_pipeline")
        assert content.feasible

    def test_batch_shrinks_to_call_quota(self, settings, pools, now):
        scheduler = PriorityScheduler(settings)
        candidates = scheduler.schedule({"seo_monitor": CategoryStats("seo_monitor", backlog_size=20)}, now)
        pools.reserve({"external_calls": 45}, now=now)  # 75%: warning, not blocking

        result = AdmissionController(settings).evaluate(candidates, pools.snapshot(now))

        seo = next(d for d in result.decisions if d.category_id == "seo_monitor")
        assert seo.feasible
        assert seo.candidate.batch_size == 20
        assert seo.admitted_batch_size == 15
        assert any("shrunk" in r for r in seo.reasons)

    def test_batch_never_shrinks_below_minimum(self, make_settings, db, now):
        settings = make_settings(external_call_quota=40)
        tracker = ResourcePoolTracker(db, settings)
        tracker.ensure_pools(now)
        tracker.reserve({"external_calls": 36}, now=now)  # 90%: not yet critical, 4 calls left
        candidates = PriorityScheduler(settings).schedule({}, now)

        result = AdmissionController(settings).evaluate(candidates, tracker.snapshot(now))

        seo = next(d for d in result.decisions if d.category_id == "seo_monitor")
        assert not seo.feasible
        assert seo.error_kind == ErrorKind.RESOURCE_EXHAUSTION
        assert any("minimum batch of 5" in r for r in seo.reasons)

    def test_not_executing_candidates_are_skipped(self, settings, pools, candidates, now):
        skipped = replace(candidates[0], should_execute=False)
        result = AdmissionController(settings).evaluate([skipped], pools.snapshot(now))
        assert result.decisions == []

    def test_invalid_candidate_is_validation_error(self, settings, pools, candidates, now):
        broken = replace(candidates[0], batch_size=0)
        result = AdmissionController(settings).evaluate([broken], pools.snapshot(now))
        assert result.decisions[0].error_kind == ErrorKind.VALIDATION
        assert not result.decisions[0].feasible

    def test_unknown_category_is_validation_error(self, settings, pools, candidates, now):
        stranger = replace(candidates[0], category_id="podcast")
        result = AdmissionController(settings).evaluate([stranger], pools.snapshot(now))
        assert result.decisions[0].error_kind == ErrorKind.VALIDATION

    def test_warning_pool_produces_recommendation(self, settings, pools, candidates, now):
        pools.reserve({"budget": 0.8 * settings.daily_budget}, now=now)
        result = AdmissionController(settings).evaluate(candidates, pools.snapshot(now))
        assert any(r.resource_type == "budget" for r in result.recommendations)
