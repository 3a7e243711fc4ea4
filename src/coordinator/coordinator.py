"""
Coordinator - one tick of the content generation pipeline.

A tick runs, in order:

1. the health gate (read-only)
2. the state machine's single-flight check
3. accounting upkeep (expired pool windows, execution timeouts)
4. starvation promotion on the work queue
5. scoring, admission and planning against one pool snapshot
6. reservation and dispatch
7. archival and monitoring

Task-level problems (invalid candidates, exhausted pools, refused
reservations) are written to the error log and the tick carries on.
Anything unexpected aborts the tick, moves the state machine through
ERROR_RECOVERY into COOLDOWN and raises a fault alert.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.error_log import ErrorLogRepository
from ..core.errors import ConcurrencyConflictError, CoordinatorError, ErrorKind
from ..core.store import Database
from ..monitoring.manager import AlertManager
from ..monitoring.monitor import Monitor, MonitorReport
from ..monitoring.notifiers import BaseNotifier, LogNotifier
from ..monitoring.rules import default_rules
from ..resources.pools import PoolSnapshot, ResourcePoolTracker
from ..scheduling.admission import AdmissionController, AdmissionResult
from ..scheduling.planner import ExecutionPlan, ExecutionPlanner
from ..scheduling.scheduler import CategoryStats, PriorityScheduler, SchedulingCandidate
from ..work_queue.work_queue import WorkQueue
from .callbacks import CallbackResult, ExecutionCallbackHandler
from .dispatch import DispatchResult, ReservationDispatcher
from .health import HealthGate, HealthReport
from .records import ExecutionRecordRepository, ExecutionStatus
from .state_machine import CoordinatorStateMachine

logger = structlog.get_logger(__name__)


class TickOutcome(str, Enum):
    DISPATCHED = "dispatched"
    NOTHING_TO_DO = "nothing_to_do"
    HEALTH_BLOCKED = "health_blocked"
    CONCURRENT_TICK = "concurrent_tick"
    COOLDOWN = "cooldown"
    RECOVERED = "recovered"
    FAULTED = "faulted"
    STOPPED = "stopped"


@dataclass
class TickResult:
    """Everything one tick decided, for callers and logs."""
    tick_id: str
    worker_id: str
    started_at: datetime
    outcome: Optional[TickOutcome] = None
    step: str = "start"
    health: Optional[HealthReport] = None
    timed_out: list[CallbackResult] = field(default_factory=list)
    starvation_promotions: int = 0
    candidates: list[SchedulingCandidate] = field(default_factory=list)
    admission: Optional[AdmissionResult] = None
    plan: Optional[ExecutionPlan] = None
    dispatch: Optional[DispatchResult] = None
    monitor: Optional[MonitorReport] = None
    archived: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def records_created(self) -> int:
        return len(self.dispatch.records) if self.dispatch else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "worker_id": self.worker_id,
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome.value if self.outcome else None,
            "step": self.step,
            "health": self.health.to_dict() if self.health else None,
            "timed_out": [r.record.execution_id for r in self.timed_out],
            "starvation_promotions": self.starvation_promotions,
            "candidates": [c.to_dict() for c in self.candidates],
            "admission": self.admission.to_dict() if self.admission else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "archived": self.archived,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }


class Coordinator:
    """Wires the pipeline components around one database."""

    def __init__(
        self,
        settings: CoordinatorSettings,
        db: Optional[Database] = None,
        notifiers: Optional[list[BaseNotifier]] = None,
    ):
        self.settings = settings
        self.db = db or Database(settings.db_path)
        self.error_log = ErrorLogRepository(self.db)
        self.pools = ResourcePoolTracker(self.db, settings)
        self.queue = WorkQueue(self.db, settings, self.error_log)
        self.records = ExecutionRecordRepository(self.db)
        self.callbacks = ExecutionCallbackHandler(self.records, self.pools, settings, self.error_log)
        self.health = HealthGate(self.records, self.queue, settings)
        self.state = CoordinatorStateMachine(self.db, settings)
        self.scheduler = PriorityScheduler(settings)
        self.admission = AdmissionController(settings)
        self.planner = ExecutionPlanner(settings)
        self.dispatcher = ReservationDispatcher(self.records, self.pools, self.error_log, settings)
        self.alerts = AlertManager(
            self.db,
            rules=default_rules(settings),
            notifiers=notifiers if notifiers is not None else [LogNotifier()],
            error_log=self.error_log,
        )
        self.monitor = Monitor(self.db, settings, self.pools, self.alerts, self.queue)
        self._stop_requested = False
        self.pools.ensure_pools()

    def request_stop(self) -> None:
        """Stop at the next checkpoint; a dispatched plan still finishes its tick."""
        self._stop_requested = True
        logger.info("coordinator_stop_requested")

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def handle_callback(
        self,
        execution_id: str,
        status: ExecutionStatus,
        now: Optional[datetime] = None,
        **details: Any,
    ) -> CallbackResult:
        """Entry point for the external executor's status reports."""
        return self.callbacks.handle_status(execution_id, status, now, **details)

    def dashboard(self, now: Optional[datetime] = None) -> dict[str, Any]:
        summary = self.monitor.dashboard(now)
        current = self.state.current()
        summary["state"] = current.to_dict() if current else None
        return summary

    async def run_tick(self, worker_id: str, now: Optional[datetime] = None) -> TickResult:
        """
        Run one tick.

        Store work runs in a worker thread so the event loop stays free
        for notifier deliveries and the runner's stop signal.

        Args:
            worker_id: Identity of the process running the tick.
            now: Tick clock; defaults to the current time.

        Returns:
            TickResult with the outcome and every intermediate decision.
        """
        now = now or datetime.now()
        result = TickResult(
            tick_id=f"tick-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}",
            worker_id=worker_id,
            started_at=now,
        )
        with structlog.contextvars.bound_contextvars(tick_id=result.tick_id, worker_id=worker_id):
            if self._stop_requested:
                result.outcome = TickOutcome.STOPPED
                return result

            started = False
            try:
                result.step = "health_gate"
                result.health = await asyncio.to_thread(self.health.check, now)
                if not result.health.can_proceed:
                    result.outcome = TickOutcome.HEALTH_BLOCKED
                    return result

                result.step = "begin_tick"
                try:
                    admission = await asyncio.to_thread(self.state.begin_tick, worker_id, now)
                except ConcurrencyConflictError as e:
                    self.error_log.record_exception(e, worker_id=worker_id, now=now, tick_id=result.tick_id)
                    result.outcome = TickOutcome.CONCURRENT_TICK
                    result.error_kind = e.kind
                    result.error = e.message
                    return result
                if not admission.started:
                    result.outcome = (
                        TickOutcome.RECOVERED
                        if admission.reason == "recovered_stale_tick"
                        else TickOutcome.COOLDOWN
                    )
                    logger.info("tick_deferred", reason=admission.reason)
                    return result
                started = True

                await self._run_pipeline(result, worker_id, now)
            except Exception as e:
                await self._handle_fault(result, e, worker_id, now, started)

        logger.info(
            "tick_finished",
            outcome=result.outcome.value,
            records=result.records_created,
        )
        return result

    async def _run_pipeline(self, result: TickResult, worker_id: str, now: datetime) -> None:
        await asyncio.to_thread(self._upkeep, result, now)

        snapshot = await asyncio.to_thread(self._analyze, result, worker_id, now)
        if snapshot is None:
            return

        if result.plan.is_empty:
            await asyncio.to_thread(self.state.plan_empty, worker_id, now, {"plan_id": result.plan.plan_id})
            result.outcome = TickOutcome.NOTHING_TO_DO
            await self._monitor(result, now)
            return

        await asyncio.to_thread(self._dispatch, result, worker_id, now, snapshot)
        await self._monitor(result, now)
        await asyncio.to_thread(
            self.state.tick_finished, worker_id, now, {"records": result.records_created}
        )

    def _upkeep(self, result: TickResult, now: datetime) -> None:
        """Expired accounting windows and overdue executions, once per admitted tick."""
        result.step = "upkeep"
        self.pools.reset_expired_windows(now)
        result.timed_out = self.callbacks.sweep_timeouts(now)

    def _analyze(self, result: TickResult, worker_id: str, now: datetime) -> Optional[PoolSnapshot]:
        """Score, admit and plan; returns the planning snapshot, or None when stopped."""
        result.step = "starvation"
        result.starvation_promotions = self.queue.prevent_starvation(now)

        result.step = "schedule"
        result.candidates = self.scheduler.schedule(self._gather_stats(now), now)
        if self._stop_checkpoint(result, worker_id, now):
            return None

        result.step = "admission"
        snapshot = self.pools.snapshot(now)
        result.admission = self.admission.evaluate(result.candidates, snapshot)
        for decision in result.admission.infeasible:
            self.error_log.record(
                decision.error_kind or ErrorKind.RESOURCE_EXHAUSTION,
                f"Category {decision.category_id} not admitted: {'; '.join(decision.reasons)}",
                {"tick_id": result.tick_id, **decision.to_dict()},
                worker_id=worker_id,
                now=now,
            )

        result.step = "plan"
        slots = max(0, self.settings.max_concurrent_executions - self.records.count_active())
        result.plan = self.planner.build(result.admission, worker_id, now, available_slots=slots)
        for dropped in result.plan.dropped:
            self.error_log.record(
                dropped.error_kind,
                f"Category {dropped.category_id} dropped from plan: {dropped.reason}",
                {"tick_id": result.tick_id, "plan_id": result.plan.plan_id, **dropped.to_dict()},
                worker_id=worker_id,
                now=now,
            )
        if self._stop_checkpoint(result, worker_id, now):
            return None
        return snapshot

    def _dispatch(self, result: TickResult, worker_id: str, now: datetime, snapshot: PoolSnapshot) -> None:
        result.step = "dispatch"
        self.state.plan_ready(worker_id, now, {"plan_id": result.plan.plan_id, **result.plan.risk.to_dict()})
        queue_types = {
            c.category_id: c.queue_task_type for c in self.settings.categories if c.queue_task_type
        }
        result.dispatch = self.dispatcher.dispatch(result.plan, snapshot, now, queue_types)
        if result.dispatch.dispatched:
            self.state.dispatched(worker_id, now, result.dispatch.to_dict())
            result.outcome = TickOutcome.DISPATCHED
        else:
            self.state.dispatch_refused(worker_id, now, result.dispatch.to_dict())
            result.outcome = TickOutcome.NOTHING_TO_DO
            result.error_kind = result.dispatch.error_kind
            result.error = result.dispatch.message

    async def _monitor(self, result: TickResult, now: datetime) -> None:
        result.step = "monitor"
        result.archived = await asyncio.to_thread(
            self.records.archive, now - timedelta(days=self.settings.archive_after_days)
        )
        result.monitor = await self.monitor.record_tick(
            now,
            extra_recommendations=result.admission.recommendations if result.admission else (),
        )

    def _stop_checkpoint(self, result: TickResult, worker_id: str, now: datetime) -> bool:
        if not self._stop_requested:
            return False
        self.state.plan_empty(worker_id, now, {"step": result.step}, reason="stopped")
        result.outcome = TickOutcome.STOPPED
        logger.info("tick_stopped", step=result.step)
        return True

    async def _handle_fault(
        self,
        result: TickResult,
        error: Exception,
        worker_id: str,
        now: datetime,
        started: bool,
    ) -> None:
        fault = {
            "tick_id": result.tick_id,
            "step": result.step,
            "exception": type(error).__name__,
            "message": str(error),
        }
        if isinstance(error, CoordinatorError):
            fault["kind"] = error.kind.value
            fault["context"] = error.context
        logger.exception("tick_faulted", step=result.step)
        self.error_log.record(
            ErrorKind.SYSTEM_FAULT,
            f"Tick {result.tick_id} faulted during {result.step}: {error}",
            fault,
            worker_id=worker_id,
            now=now,
        )
        result.outcome = TickOutcome.FAULTED
        result.error_kind = ErrorKind.SYSTEM_FAULT
        result.error = str(error)

        # Never take over another worker's in-flight tick
        if started or not self.state.state.in_flight:
            self.state.recover(worker_id, now, {**fault, "tick_started": started})
        result.monitor = await self.monitor.record_tick(now, fault=fault)

    def _gather_stats(self, now: datetime) -> dict[str, CategoryStats]:
        """Category history from the records plus backlog from the queue."""
        history = self.records.category_history(
            now,
            success_window=timedelta(hours=self.settings.success_window_hours),
            history_window=timedelta(days=self.settings.history_window_days),
        )
        stats = {}
        for config in self.settings.categories:
            seen = history.get(config.category_id)
            minutes = None
            if seen is not None and seen.last_run_at is not None:
                minutes = max(0.0, (now - seen.last_run_at).total_seconds() / 60)
            backlog = self.queue.backlog_size(config.queue_task_type) if config.queue_task_type else 0
            stats[config.category_id] = CategoryStats(
                category_id=config.category_id,
                minutes_since_last_run=minutes,
                backlog_size=backlog,
                recent_successes=seen.recent_successes if seen else 0,
                recent_failures=seen.recent_failures if seen else 0,
                avg_duration_ms=seen.avg_duration_ms if seen else None,
            )
        return stats
