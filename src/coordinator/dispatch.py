"""
Reservation & Dispatch - commit a plan's resources and hand it off.

The reservation is committed first and the pending records are written
second. If the record write fails, the reservation is released again; if
that release also fails the leak is logged with everything needed to
reconcile the pools by hand.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.error_log import ErrorLogRepository
from ..core.errors import (
    ConcurrencyConflictError,
    ErrorKind,
    ResourceExhaustionError,
    SystemFaultError,
)
from ..resources.pools import PoolSnapshot, ResourcePoolTracker
from ..scheduling.planner import ExecutionPlan, PlannedTask
from .records import ExecutionContext, ExecutionRecord, ExecutionRecordRepository, ExecutionStatus

logger = structlog.get_logger(__name__)


@dataclass
class DispatchResult:
    plan_id: Optional[str]
    records: list[ExecutionRecord] = field(default_factory=list)
    reserved: dict[str, float] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def dispatched(self) -> bool:
        return bool(self.records)

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "execution_ids": [r.execution_id for r in self.records],
            "reserved": self.reserved,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
        }


class ReservationDispatcher:
    """Turns an ExecutionPlan into committed reservations and pending records."""

    def __init__(
        self,
        records: ExecutionRecordRepository,
        pools: ResourcePoolTracker,
        error_log: ErrorLogRepository,
        settings: CoordinatorSettings,
    ):
        self.records = records
        self.pools = pools
        self.error_log = error_log
        self.settings = settings

    def dispatch(
        self,
        plan: ExecutionPlan,
        snapshot: PoolSnapshot,
        now: datetime,
        queue_task_types: Optional[dict[str, str]] = None,
    ) -> DispatchResult:
        """
        Reserve the plan's resources and create one pending record per task.

        A refused reservation (pool changed since ``snapshot`` or no longer
        fits) is non-fatal: nothing is written and the result carries the
        error kind.

        Raises:
            SystemFaultError: The record write failed after the reservation
                committed.
        """
        result = DispatchResult(plan_id=plan.plan_id)
        if plan.is_empty:
            return result

        totals = plan.reservation_totals()
        try:
            self.pools.reserve(totals, expected_versions=snapshot.versions(totals), now=now)
        except (ConcurrencyConflictError, ResourceExhaustionError) as exc:
            self.error_log.record_exception(
                exc, worker_id=plan.worker_id, now=now, plan_id=plan.plan_id, amounts=totals
            )
            logger.warning("reservation_refused", plan_id=plan.plan_id, kind=exc.kind.value, reason=exc.message)
            result.error_kind = exc.kind
            result.message = exc.message
            return result

        pending = [
            self._build_record(plan, task, now, (queue_task_types or {}).get(task.category_id))
            for task in plan.tasks
        ]
        try:
            self.records.create_pending(pending)
        except Exception as exc:
            self._compensate(plan, totals, exc, now)
            raise SystemFaultError(
                f"Record write failed for plan {plan.plan_id}: {exc}",
                {"plan_id": plan.plan_id, "amounts": totals},
            ) from exc

        self.pools.sample_usage(now, metadata={"plan_id": plan.plan_id})
        result.records = pending
        result.reserved = totals
        logger.info(
            "plan_dispatched",
            plan_id=plan.plan_id,
            records=[r.execution_id for r in pending],
            reserved=totals,
        )
        return result

    def _build_record(
        self,
        plan: ExecutionPlan,
        task: PlannedTask,
        now: datetime,
        queue_task_type: Optional[str],
    ) -> ExecutionRecord:
        context = ExecutionContext(
            category_id=task.category_id,
            batch_size=task.batch_size,
            plan_id=plan.plan_id,
            execution_order=task.execution_order,
            start_offset_seconds=task.start_offset_seconds,
            estimated_duration_ms=task.estimated_duration_ms,
            predicted_success_rate=task.predicted_success_rate,
            dependencies=task.dependencies,
            queue_task_type=queue_task_type,
            reasoning=task.reasoning,
        )
        return ExecutionRecord(
            execution_id=str(uuid.uuid4()),
            category=task.category_id,
            status=ExecutionStatus.PENDING,
            priority=task.priority,
            plan_id=plan.plan_id,
            scheduled_at=now + timedelta(seconds=task.start_offset_seconds),
            timeout_at=task.timeout_at,
            batch_size=task.batch_size,
            estimated_cost=task.estimated_cost,
            worker_id=plan.worker_id,
            input_context=context,
            resource_allocation=dict(task.reservation),
            max_retries=self.settings.max_retries,
            created_at=now,
            updated_at=now,
        )

    def _compensate(self, plan: ExecutionPlan, totals: dict[str, float], cause: Exception, now: datetime) -> None:
        context = {
            "plan_id": plan.plan_id,
            "amounts": totals,
            "categories": [t.category_id for t in plan.tasks],
            "cause": repr(cause),
        }
        try:
            self.pools.release(totals, now)
        except Exception as release_exc:
            logger.critical("reservation_leaked", **context, release_error=repr(release_exc))
            self.error_log.record(
                ErrorKind.SYSTEM_FAULT,
                f"Reservation for plan {plan.plan_id} leaked: release failed",
                {**context, "release_error": repr(release_exc)},
                worker_id=plan.worker_id,
                now=now,
            )
            return
        self.error_log.record(
            ErrorKind.SYSTEM_FAULT,
            f"Record write failed for plan {plan.plan_id}; reservation released",
            context,
            worker_id=plan.worker_id,
            now=now,
        )
        logger.error("reservation_released_after_write_failure", **context)
