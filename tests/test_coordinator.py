"""End-to-end tests for the coordinator tick."""
from datetime import timedelta

import pytest

from src.coordinator import CoordinatorState, ExecutionStatus, TickOutcome
from src.core.errors import ErrorKind
from src.resources.pools import PoolStatus


def categories_of(result):
    return [r.category for r in result.dispatch.records]


class TestRunTick:
    """Tests for Coordinator.run_tick."""

    @pytest.mark.asyncio
    async def test_first_tick_dispatches_up_to_concurrency(self, coordinator, records, now):
        result = await coordinator.run_tick("worker-a", now)

        assert result.outcome == TickOutcome.DISPATCHED
        assert result.records_created == 3
        assert categories_of(result) == ["content_pipeline", "seo_monitor", "revenue_optimizer"]
        assert [r.scheduled_at for r in result.dispatch.records] == [
            now, now + timedelta(seconds=30), now + timedelta(seconds=60)
        ]
        assert records.count_active() == 3
        assert coordinator.state.state == CoordinatorState.IDLE
        assert result.monitor is not None

    @pytest.mark.asyncio
    async def test_dropped_categories_are_logged(self, coordinator, error_log, now):
        await coordinator.run_tick("worker-a", now)
        dropped = error_log.recent(ErrorKind.RESOURCE_EXHAUSTION)
        assert [e.context["category_id"] for e in dropped] == ["intelligence_engine"]

    @pytest.mark.asyncio
    async def test_state_log_for_a_dispatching_tick(self, coordinator, now):
        await coordinator.run_tick("worker-a", now)
        states = [e.state for e in reversed(coordinator.state.history())]
        assert states == [
            CoordinatorState.ANALYZING,
            CoordinatorState.DISPATCHING,
            CoordinatorState.MONITORING,
            CoordinatorState.IDLE,
        ]

    @pytest.mark.asyncio
    async def test_health_gate_blocks_when_slots_are_full(self, coordinator, now):
        await coordinator.run_tick("worker-a", now)
        result = await coordinator.run_tick("worker-a", now + timedelta(minutes=1))

        assert result.outcome == TickOutcome.HEALTH_BLOCKED
        assert not result.health.can_proceed
        assert result.records_created == 0

    @pytest.mark.asyncio
    async def test_next_tick_runs_what_is_due(self, coordinator, pools, now):
        first = await coordinator.run_tick("worker-a", now)
        for record in first.dispatch.records:
            coordinator.handle_callback(
                record.execution_id,
                ExecutionStatus.COMPLETED,
                now + timedelta(minutes=5),
                actual_cost=record.estimated_cost,
                actual_duration_ms=60_000,
            )
        assert pools.get("memory").used_amount == 0

        second = await coordinator.run_tick("worker-a", now + timedelta(minutes=10))

        assert second.outcome == TickOutcome.DISPATCHED
        assert categories_of(second) == ["intelligence_engine"]
        ready = {c.category_id for c in second.candidates if c.should_execute}
        assert ready == {"intelligence_engine"}

    @pytest.mark.asyncio
    async def test_nothing_due_is_a_quiet_tick(self, coordinator, now):
        first = await coordinator.run_tick("worker-a", now)
        for record in first.dispatch.records:
            coordinator.handle_callback(record.execution_id, ExecutionStatus.COMPLETED, now)
        await coordinator.run_tick("worker-a", now + timedelta(minutes=1))

        result = await coordinator.run_tick("worker-a", now + timedelta(minutes=2))

        assert result.outcome == TickOutcome.NOTHING_TO_DO
        assert result.plan.is_empty
        assert coordinator.state.state == CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_backlog_raises_batch_size(self, coordinator, queue, now):
        for _ in range(12):
            queue.enqueue("seo_analysis", now=now)

        result = await coordinator.run_tick("worker-a", now)

        seo = next(c for c in result.candidates if c.category_id == "seo_monitor")
        assert seo.backlog_size == 12
        record = next(r for r in result.dispatch.records if r.category == "seo_monitor")
        assert record.input_context.queue_task_type == "seo_analysis"

    @pytest.mark.asyncio
    async def test_concurrent_tick_is_refused(self, coordinator, error_log, now):
        coordinator.state.begin_tick("worker-b", now)

        result = await coordinator.run_tick("worker-a", now + timedelta(seconds=5))

        assert result.outcome == TickOutcome.CONCURRENT_TICK
        assert result.error_kind == ErrorKind.CONCURRENCY_CONFLICT
        assert error_log.recent(ErrorKind.CONCURRENCY_CONFLICT)
        # The other worker's tick is left alone
        assert coordinator.state.state == CoordinatorState.ANALYZING

    @pytest.mark.asyncio
    async def test_fault_moves_to_cooldown_and_alerts(self, coordinator, error_log, settings, now, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("planner exploded")

        monkeypatch.setattr(coordinator.planner, "build", broken)

        result = await coordinator.run_tick("worker-a", now)

        assert result.outcome == TickOutcome.FAULTED
        assert result.step == "plan"
        assert result.error_kind == ErrorKind.SYSTEM_FAULT
        assert coordinator.state.state == CoordinatorState.COOLDOWN
        fault = error_log.recent(ErrorKind.SYSTEM_FAULT)[0]
        assert fault.context["step"] == "plan"
        assert fault.context["exception"] == "RuntimeError"
        assert [a.alert_type for a in coordinator.alerts.open_alerts()] == ["CoordinatorFault"]

        monkeypatch.undo()
        waiting = await coordinator.run_tick("worker-a", now + timedelta(minutes=1))
        assert waiting.outcome == TickOutcome.COOLDOWN

        resumed = await coordinator.run_tick("worker-a", now + timedelta(seconds=settings.cooldown_seconds))
        assert resumed.outcome == TickOutcome.DISPATCHED

    @pytest.mark.asyncio
    async def test_stale_tick_is_recovered(self, coordinator, settings, now):
        coordinator.state.begin_tick("worker-b", now)
        later = now + timedelta(seconds=settings.stale_tick_seconds + 60)

        result = await coordinator.run_tick("worker-a", later)

        assert result.outcome == TickOutcome.RECOVERED
        assert coordinator.state.state == CoordinatorState.COOLDOWN

    @pytest.mark.asyncio
    async def test_refused_reservation_is_not_a_fault(self, coordinator, pools, now, monkeypatch):
        original = coordinator.planner.build

        def build_then_race(*args, **kwargs):
            plan = original(*args, **kwargs)
            pools.reserve({"budget": 0.01}, now=now)
            return plan

        monkeypatch.setattr(coordinator.planner, "build", build_then_race)

        result = await coordinator.run_tick("worker-a", now)

        assert result.outcome == TickOutcome.NOTHING_TO_DO
        assert result.error_kind == ErrorKind.CONCURRENCY_CONFLICT
        assert result.records_created == 0
        assert coordinator.state.state == CoordinatorState.IDLE
        refused = coordinator.state.history()[1]
        assert refused.state == CoordinatorState.MONITORING
        assert refused.reason == "reservation_refused"
        assert refused.payload["error_kind"] == "concurrency_conflict"

    @pytest.mark.asyncio
    async def test_blocked_tick_leaves_overdue_records_alone(self, coordinator, records, make_record, settings, now):
        for _ in range(settings.max_recent_failures + 1):
            failed = make_record()
            records.apply_status(failed.execution_id, ExecutionStatus.FAILED, now)
        overdue = make_record(timeout_at=now - timedelta(minutes=1), scheduled_at=now - timedelta(minutes=20))

        result = await coordinator.run_tick("worker-a", now)

        assert result.outcome == TickOutcome.HEALTH_BLOCKED
        assert result.timed_out == []
        assert records.get(overdue.execution_id).status == ExecutionStatus.PENDING
        assert coordinator.state.history() == []

    @pytest.mark.asyncio
    async def test_concurrent_tick_does_not_sweep(self, coordinator, records, make_record, now):
        overdue = make_record(timeout_at=now - timedelta(minutes=1), scheduled_at=now - timedelta(minutes=20))
        coordinator.state.begin_tick("worker-b", now)

        result = await coordinator.run_tick("worker-a", now + timedelta(seconds=5))

        assert result.outcome == TickOutcome.CONCURRENT_TICK
        assert records.get(overdue.execution_id).status == ExecutionStatus.PENDING

    @pytest.mark.asyncio
    async def test_timeout_sweep_race_is_not_a_fault(self, coordinator, records, now, monkeypatch):
        first = await coordinator.run_tick("worker-a", now)
        late = max(r.timeout_at for r in first.dispatch.records) + timedelta(seconds=1)
        winner = first.dispatch.records[0]
        original = records.overdue

        def overdue_then_callback(at):
            found = original(at)
            coordinator.handle_callback(winner.execution_id, ExecutionStatus.COMPLETED, at)
            return found

        monkeypatch.setattr(coordinator.records, "overdue", overdue_then_callback)

        result = await coordinator.run_tick("worker-a", late)

        assert result.outcome != TickOutcome.FAULTED
        assert len(result.timed_out) == 2
        assert records.get(winner.execution_id).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_external_calls_pool_readmits_after_cooldown(self, coordinator, make_record, pools, settings, now):
        failed_at = now - timedelta(days=2)
        for _ in range(settings.unavailable_error_threshold):
            record = make_record(
                "content_pipeline",
                scheduled_at=failed_at,
                retry_count=settings.max_retries,
                max_retries=settings.max_retries,
            )
            coordinator.handle_callback(record.execution_id, ExecutionStatus.FAILED, failed_at)
        assert pools.snapshot(failed_at).status_of("external_calls") == PoolStatus.UNAVAILABLE

        result = await coordinator.run_tick("worker-a", now)

        assert result.outcome == TickOutcome.DISPATCHED
        assert "content_pipeline" in categories_of(result)

    @pytest.mark.asyncio
    async def test_overdue_records_time_out_at_tick_start(self, coordinator, records, now):
        first = await coordinator.run_tick("worker-a", now)
        late = max(r.timeout_at for r in first.dispatch.records) + timedelta(seconds=1)

        result = await coordinator.run_tick("worker-a", late)

        assert len(result.timed_out) == 3
        assert all(r.retry_record is not None for r in result.timed_out)
        for timed_out in result.timed_out:
            assert records.get(timed_out.record.execution_id).status == ExecutionStatus.TIMEOUT


class TestStop:
    """Tests for cooperative shutdown."""

    @pytest.mark.asyncio
    async def test_stop_before_tick(self, coordinator, records, now):
        coordinator.request_stop()
        result = await coordinator.run_tick("worker-a", now)
        assert result.outcome == TickOutcome.STOPPED
        assert coordinator.state.history() == []

    @pytest.mark.asyncio
    async def test_stop_during_scheduling_dispatches_nothing(self, coordinator, records, now, monkeypatch):
        original = coordinator.scheduler.schedule

        def schedule_then_stop(*args, **kwargs):
            coordinator.request_stop()
            return original(*args, **kwargs)

        monkeypatch.setattr(coordinator.scheduler, "schedule", schedule_then_stop)

        result = await coordinator.run_tick("worker-a", now)

        assert result.outcome == TickOutcome.STOPPED
        assert records.count_active() == 0
        latest = coordinator.state.current()
        assert latest.state == CoordinatorState.IDLE
        assert latest.reason == "stopped"


class TestDashboard:
    """Tests for the operator summary."""

    @pytest.mark.asyncio
    async def test_dashboard_after_tick(self, coordinator, now):
        await coordinator.run_tick("worker-a", now)
        summary = coordinator.dashboard(now)

        assert summary["state"]["state"] == "idle"
        assert summary["executions"]["total"] == 3
        assert set(summary["pools"]["pools"]) == {"budget", "external_calls", "memory", "connections"}
        assert "queue" in summary
