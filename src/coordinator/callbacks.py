"""
Status callbacks from the external workflow executor.

The executor reports ``running`` and then one terminal status with the
actual cost, duration and output or error payload. Terminal statuses
release held resources (memory, connections) and reconcile the budget
against what was reserved. A failure with retries left schedules a
follow-up record; a failure at the limit is permanent.
"""
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.error_log import ErrorLogRepository
from ..core.errors import ConcurrencyConflictError, ErrorKind, InvalidTransitionError, ValidationError
from ..resources.pools import ResourcePoolTracker, ResourceType
from .records import ExecutionRecord, ExecutionRecordRepository, ExecutionStatus

logger = structlog.get_logger(__name__)

CALLBACK_STATUSES = frozenset({
    ExecutionStatus.RUNNING,
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.CANCELLED,
})


@dataclass(frozen=True)
class CallbackResult:
    record: ExecutionRecord
    previous_status: ExecutionStatus
    released: dict[str, float]
    budget_delta: float = 0.0
    retry_record: Optional[ExecutionRecord] = None
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict:
        return {
            "execution_id": self.record.execution_id,
            "previous_status": self.previous_status.value,
            "status": self.record.status.value,
            "released": self.released,
            "budget_delta": round(self.budget_delta, 4),
            "retry_execution_id": self.retry_record.execution_id if self.retry_record else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


class ExecutionCallbackHandler:
    """Applies executor callbacks to records and resource pools."""

    def __init__(
        self,
        records: ExecutionRecordRepository,
        pools: ResourcePoolTracker,
        settings: CoordinatorSettings,
        error_log: ErrorLogRepository,
    ):
        self.records = records
        self.pools = pools
        self.settings = settings
        self.error_log = error_log

    def handle_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        now: Optional[datetime] = None,
        actual_cost: Optional[float] = None,
        actual_duration_ms: Optional[int] = None,
        output: Optional[dict[str, Any]] = None,
        error: Optional[dict[str, Any]] = None,
    ) -> CallbackResult:
        """
        Apply one status report.

        Raises:
            ValidationError: Unknown record, status not reportable, or negative cost.
            InvalidTransitionError: The record is already past ``status``.
            ConcurrencyConflictError: Another callback won the race.
        """
        now = now or datetime.now()
        status = ExecutionStatus(status)
        if status not in CALLBACK_STATUSES:
            raise ValidationError(f"Status {status.value} cannot be reported", {"execution_id": execution_id})
        if actual_cost is not None and actual_cost < 0:
            raise ValidationError("actual_cost must be non-negative", {"execution_id": execution_id})

        with self.records.db.transaction():
            before, after = self.records.apply_status(
                execution_id,
                status,
                now,
                actual_cost=actual_cost,
                actual_duration_ms=actual_duration_ms,
                output=output,
                error=error,
            )
            if not status.is_terminal:
                return CallbackResult(record=after, previous_status=before.status, released={})

            retry = None
            error_kind = None
            if status.is_failure:
                retry, error_kind = self._handle_failure(after, now)

            released = self._release_held(after, retry, now)
            budget_delta = self._reconcile_budget(after, now)
            self._track_pool_health(after, now)

        return CallbackResult(
            record=after,
            previous_status=before.status,
            released=released,
            budget_delta=budget_delta,
            retry_record=retry,
            error_kind=error_kind,
        )

    def sweep_timeouts(self, now: Optional[datetime] = None) -> list[CallbackResult]:
        """
        Mark every active record past its deadline as timed out.

        A record whose own callback lands between the read and the update
        keeps the executor's status and is skipped.
        """
        now = now or datetime.now()
        results = []
        for record in self.records.overdue(now):
            try:
                results.append(self.handle_status(
                    record.execution_id,
                    ExecutionStatus.TIMEOUT,
                    now,
                    error={"reason": "timeout_at passed", "timeout_at": record.timeout_at.isoformat()},
                ))
            except (InvalidTransitionError, ConcurrencyConflictError) as e:
                logger.debug("timeout_sweep_skipped", execution_id=record.execution_id, reason=e.message)
        if results:
            logger.warning("executions_timed_out", count=len(results))
        return results

    def _handle_failure(
        self, record: ExecutionRecord, now: datetime
    ) -> tuple[Optional[ExecutionRecord], ErrorKind]:
        context = {
            "execution_id": record.execution_id,
            "category": record.category,
            "status": record.status.value,
            "retry_count": record.retry_count,
            "max_retries": record.max_retries,
            "error": record.error_details,
        }
        if not record.can_retry:
            self.error_log.record(
                ErrorKind.PERMANENT_FAILURE,
                f"Execution {record.execution_id} failed after {record.retry_count} retries",
                context,
                worker_id=record.worker_id,
                now=now,
            )
            return None, ErrorKind.PERMANENT_FAILURE

        retry_count = record.retry_count + 1
        scheduled_at = now + timedelta(seconds=self.settings.backoff_seconds(retry_count))
        duration_ms = record.input_context.estimated_duration_ms or 0
        held = {
            name: amount
            for name, amount in record.resource_allocation.items()
            if ResourceType(name).is_held
        }
        retry = replace(
            record,
            execution_id=str(uuid.uuid4()),
            status=ExecutionStatus.PENDING,
            parent_execution_id=record.execution_id,
            scheduled_at=scheduled_at,
            timeout_at=scheduled_at + timedelta(milliseconds=duration_ms),
            started_at=None,
            completed_at=None,
            actual_cost=None,
            actual_duration_ms=None,
            resource_allocation=held,
            retry_count=retry_count,
            error_details=None,
            output_result=None,
            archived=False,
            created_at=now,
            updated_at=now,
        )
        self.records.create_pending([retry])
        self.error_log.record(
            ErrorKind.TRANSIENT_EXECUTION_FAILURE,
            f"Execution {record.execution_id} failed, retry {retry_count} scheduled",
            {**context, "retry_execution_id": retry.execution_id, "scheduled_at": scheduled_at.isoformat()},
            worker_id=record.worker_id,
            now=now,
        )
        return retry, ErrorKind.TRANSIENT_EXECUTION_FAILURE

    def _release_held(
        self,
        record: ExecutionRecord,
        retry: Optional[ExecutionRecord],
        now: datetime,
    ) -> dict[str, float]:
        # A follow-up record keeps holding what its parent held
        if retry is not None:
            return {}
        held = {
            name: amount
            for name, amount in record.resource_allocation.items()
            if ResourceType(name).is_held and amount > 0
        }
        if held:
            self.pools.release(held, now)
        return held

    def _reconcile_budget(self, record: ExecutionRecord, now: datetime) -> float:
        config = self.settings.category(record.category)
        if record.actual_cost is None or config is None:
            return 0.0
        if ResourceType.BUDGET.value not in config.resource_pools:
            return 0.0
        # Follow-up records reserve no budget up front
        reserved = record.resource_allocation.get(ResourceType.BUDGET.value, 0.0)
        delta = record.actual_cost - reserved
        self.pools.adjust(ResourceType.BUDGET.value, delta, now)
        if delta:
            logger.info(
                "budget_reconciled",
                execution_id=record.execution_id,
                reserved=reserved,
                actual=record.actual_cost,
                delta=round(delta, 4),
            )
        return delta

    def _track_pool_health(self, record: ExecutionRecord, now: datetime) -> None:
        config = self.settings.category(record.category)
        if config is None or ResourceType.EXTERNAL_CALLS.value not in config.resource_pools:
            return
        if record.status.is_failure:
            self.pools.record_error(ResourceType.EXTERNAL_CALLS.value, now)
        elif record.status == ExecutionStatus.COMPLETED:
            self.pools.record_success(ResourceType.EXTERNAL_CALLS.value, now)
