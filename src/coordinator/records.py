"""
Durable execution records.

An ExecutionRecord is one dispatched batch handed to the external
workflow executor. Records are created ``pending`` and only ever move
forward through their status set; they are archived, never deleted.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import structlog

from ..core.errors import ConcurrencyConflictError, InvalidTransitionError, ValidationError
from ..core.store import Database, from_db_time, from_json, to_db_time, to_json

logger = structlog.get_logger(__name__)

MAX_EXTRA_KEYS = 16


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)

    @property
    def is_failure(self) -> bool:
        return self in (ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT)

    def can_move_to(self, target: "ExecutionStatus") -> bool:
        return target in _FORWARD[self]


_TERMINAL = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.CANCELLED,
})
_FORWARD: dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING}) | _TERMINAL,
    ExecutionStatus.RUNNING: _TERMINAL,
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.TIMEOUT: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}
ACTIVE_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


@dataclass(frozen=True)
class ExecutionContext:
    """Input handed to the executor: typed fields plus a bounded extras map."""
    category_id: str
    batch_size: int
    plan_id: Optional[str] = None
    execution_order: int = 1
    start_offset_seconds: int = 0
    estimated_duration_ms: float = 0.0
    predicted_success_rate: Optional[float] = None
    dependencies: tuple[str, ...] = ()
    queue_task_type: Optional[str] = None
    reasoning: tuple[str, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if len(self.extra) > MAX_EXTRA_KEYS:
            raise ValidationError(
                f"Execution context extras limited to {MAX_EXTRA_KEYS} keys",
                {"keys": sorted(self.extra)},
            )

    def to_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "batch_size": self.batch_size,
            "plan_id": self.plan_id,
            "execution_order": self.execution_order,
            "start_offset_seconds": self.start_offset_seconds,
            "estimated_duration_ms": self.estimated_duration_ms,
            "predicted_success_rate": self.predicted_success_rate,
            "dependencies": list(self.dependencies),
            "queue_task_type": self.queue_task_type,
            "reasoning": list(self.reasoning),
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionContext":
        return cls(
            category_id=data["category_id"],
            batch_size=data["batch_size"],
            plan_id=data.get("plan_id"),
            execution_order=data.get("execution_order", 1),
            start_offset_seconds=data.get("start_offset_seconds", 0),
            estimated_duration_ms=data.get("estimated_duration_ms", 0.0),
            predicted_success_rate=data.get("predicted_success_rate"),
            dependencies=tuple(data.get("dependencies", ())),
            queue_task_type=data.get("queue_task_type"),
            reasoning=tuple(data.get("reasoning", ())),
            extra=data.get("extra", {}),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """One dispatched batch."""
    execution_id: str
    category: str
    status: ExecutionStatus
    priority: int
    scheduled_at: datetime
    timeout_at: datetime
    batch_size: int
    estimated_cost: float
    worker_id: str
    input_context: ExecutionContext
    resource_allocation: dict[str, float] = field(default_factory=dict)
    plan_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_cost: Optional[float] = None
    actual_duration_ms: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 3
    error_details: Optional[dict[str, Any]] = None
    output_result: Optional[dict[str, Any]] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self) -> dict:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "execution_id": self.execution_id,
            "category": self.category,
            "status": self.status.value,
            "priority": self.priority,
            "plan_id": self.plan_id,
            "parent_execution_id": self.parent_execution_id,
            "scheduled_at": iso(self.scheduled_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "timeout_at": iso(self.timeout_at),
            "batch_size": self.batch_size,
            "estimated_cost": self.estimated_cost,
            "actual_cost": self.actual_cost,
            "actual_duration_ms": self.actual_duration_ms,
            "resource_allocation": self.resource_allocation,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "worker_id": self.worker_id,
            "error_details": self.error_details,
            "input_context": self.input_context.to_dict(),
            "output_result": self.output_result,
            "archived": self.archived,
        }

    @classmethod
    def from_row(cls, row) -> "ExecutionRecord":
        return cls(
            execution_id=row["execution_id"],
            category=row["category"],
            status=ExecutionStatus(row["status"]),
            priority=row["priority"],
            plan_id=row["plan_id"],
            parent_execution_id=row["parent_execution_id"],
            scheduled_at=from_db_time(row["scheduled_at"]),
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            timeout_at=from_db_time(row["timeout_at"]),
            batch_size=row["batch_size"],
            estimated_cost=row["estimated_cost"],
            actual_cost=row["actual_cost"],
            actual_duration_ms=row["actual_duration_ms"],
            resource_allocation=from_json(row["resource_allocation"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            worker_id=row["worker_id"],
            error_details=from_json(row["error_details"]) if row["error_details"] else None,
            input_context=ExecutionContext.from_dict(from_json(row["input_context"])),
            output_result=from_json(row["output_result"]) if row["output_result"] else None,
            archived=bool(row["archived"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


@dataclass(frozen=True)
class CategoryHistory:
    """What the records say about one category's recent runs."""
    category: str
    last_run_at: Optional[datetime] = None
    recent_successes: int = 0
    recent_failures: int = 0
    avg_duration_ms: Optional[float] = None


class ExecutionRecordRepository:
    """Reads and forward-only writes of execution records."""

    def __init__(self, db: Database):
        self.db = db

    def create_pending(self, records: list[ExecutionRecord]) -> list[ExecutionRecord]:
        """Insert all records in one transaction; any failure inserts none."""
        with self.db.transaction() as conn:
            for record in records:
                if record.status != ExecutionStatus.PENDING:
                    raise ValidationError(
                        f"New records must be pending, got {record.status.value}",
                        {"execution_id": record.execution_id},
                    )
                now = to_db_time(record.created_at or record.scheduled_at)
                conn.execute(
                    """
                    INSERT INTO execution_records
                        (execution_id, category, status, priority, plan_id,
                         parent_execution_id, scheduled_at, timeout_at, batch_size,
                         estimated_cost, resource_allocation, retry_count, max_retries,
                         worker_id, error_details, input_context, created_at, updated_at)
                    VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.execution_id,
                        record.category,
                        record.priority,
                        record.plan_id,
                        record.parent_execution_id,
                        to_db_time(record.scheduled_at),
                        to_db_time(record.timeout_at),
                        record.batch_size,
                        record.estimated_cost,
                        to_json(record.resource_allocation),
                        record.retry_count,
                        record.max_retries,
                        record.worker_id,
                        to_json(record.error_details) if record.error_details else None,
                        to_json(record.input_context.to_dict()),
                        now,
                        now,
                    ),
                )
        logger.info("execution_records_created", count=len(records))
        return records

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = self.db.fetch_one(
            "SELECT * FROM execution_records WHERE execution_id = ?", (execution_id,)
        )
        return ExecutionRecord.from_row(row) if row else None

    def apply_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        now: datetime,
        actual_cost: Optional[float] = None,
        actual_duration_ms: Optional[int] = None,
        output: Optional[dict[str, Any]] = None,
        error: Optional[dict[str, Any]] = None,
    ) -> tuple[ExecutionRecord, ExecutionRecord]:
        """
        Move a record forward to ``status``.

        Returns:
            (record before, record after)

        Raises:
            ValidationError: Unknown execution id.
            InvalidTransitionError: The move is not forward.
            ConcurrencyConflictError: Another writer moved the record first.
        """
        stamp = to_db_time(now)
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM execution_records WHERE execution_id = ?", (execution_id,)
            ).fetchone()
            if row is None:
                raise ValidationError(f"Unknown execution: {execution_id}", {"execution_id": execution_id})
            before = ExecutionRecord.from_row(row)
            if not before.status.can_move_to(status):
                raise InvalidTransitionError(
                    f"Execution {execution_id} cannot move {before.status.value} -> {status.value}",
                    {"execution_id": execution_id, "from": before.status.value, "to": status.value},
                )

            started_at = before.started_at
            if status == ExecutionStatus.RUNNING and started_at is None:
                started_at = now
            completed_at = now if status.is_terminal else None

            updated = conn.execute(
                """
                UPDATE execution_records SET
                    status = ?,
                    started_at = ?,
                    completed_at = ?,
                    actual_cost = COALESCE(?, actual_cost),
                    actual_duration_ms = COALESCE(?, actual_duration_ms),
                    output_result = COALESCE(?, output_result),
                    error_details = COALESCE(?, error_details),
                    updated_at = ?
                WHERE execution_id = ? AND status = ?
                RETURNING *
                """,
                (
                    status.value,
                    to_db_time(started_at),
                    to_db_time(completed_at),
                    actual_cost,
                    actual_duration_ms,
                    to_json(output) if output is not None else None,
                    to_json(error) if error is not None else None,
                    stamp,
                    execution_id,
                    before.status.value,
                ),
            ).fetchone()
            if updated is None:
                raise ConcurrencyConflictError(
                    f"Execution {execution_id} changed concurrently",
                    {"execution_id": execution_id, "expected": before.status.value},
                )
        after = ExecutionRecord.from_row(updated)
        logger.info(
            "execution_status_changed",
            execution_id=execution_id,
            category=after.category,
            previous=before.status.value,
            status=status.value,
        )
        return before, after

    def count_active(self, live_at: Optional[datetime] = None) -> int:
        """
        Pending or running records.

        With ``live_at``, records already past their deadline are left
        out; the next admitted tick times them out.
        """
        if live_at is None:
            row = self.db.fetch_one(
                "SELECT COUNT(*) AS n FROM execution_records WHERE status IN (?, ?)",
                ACTIVE_STATUSES,
            )
        else:
            row = self.db.fetch_one(
                "SELECT COUNT(*) AS n FROM execution_records WHERE status IN (?, ?) AND timeout_at >= ?",
                (*ACTIVE_STATUSES, to_db_time(live_at)),
            )
        return row["n"]

    def active(self) -> list[ExecutionRecord]:
        rows = self.db.fetch_all(
            "SELECT * FROM execution_records WHERE status IN (?, ?) ORDER BY scheduled_at",
            ACTIVE_STATUSES,
        )
        return [ExecutionRecord.from_row(row) for row in rows]

    def overdue(self, now: datetime) -> list[ExecutionRecord]:
        """Active records past their timeout deadline."""
        rows = self.db.fetch_all(
            """
            SELECT * FROM execution_records
            WHERE status IN (?, ?) AND timeout_at < ?
            ORDER BY timeout_at
            """,
            (*ACTIVE_STATUSES, to_db_time(now)),
        )
        return [ExecutionRecord.from_row(row) for row in rows]

    def category_history(
        self,
        now: datetime,
        success_window: timedelta,
        history_window: timedelta,
    ) -> dict[str, CategoryHistory]:
        """
        Last run, trailing success/failure counts and mean duration per category.

        Cancelled records never count as a run.
        """
        rows = self.db.fetch_all(
            """
            SELECT
                category,
                MAX(COALESCE(started_at, scheduled_at)) AS last_run_at,
                SUM(CASE WHEN status = 'completed' AND scheduled_at > ? THEN 1 ELSE 0 END) AS successes,
                SUM(CASE WHEN status IN ('failed', 'timeout') AND scheduled_at > ? THEN 1 ELSE 0 END) AS failures,
                AVG(actual_duration_ms) AS avg_duration_ms
            FROM execution_records
            WHERE status != 'cancelled'
              AND scheduled_at > ?
              AND scheduled_at <= ?
            GROUP BY category
            """,
            (
                to_db_time(now - success_window),
                to_db_time(now - success_window),
                to_db_time(now - history_window),
                to_db_time(now),
            ),
        )
        return {
            row["category"]: CategoryHistory(
                category=row["category"],
                last_run_at=from_db_time(row["last_run_at"]),
                recent_successes=row["successes"] or 0,
                recent_failures=row["failures"] or 0,
                avg_duration_ms=row["avg_duration_ms"],
            )
            for row in rows
        }

    def failures_since(self, since: datetime) -> int:
        row = self.db.fetch_one(
            """
            SELECT COUNT(*) AS n FROM execution_records
            WHERE status IN ('failed', 'timeout') AND completed_at >= ?
            """,
            (to_db_time(since),),
        )
        return row["n"]

    def avg_latency_ms(self, since: datetime) -> Optional[float]:
        row = self.db.fetch_one(
            """
            SELECT AVG(actual_duration_ms) AS avg_ms FROM execution_records
            WHERE status = 'completed' AND completed_at >= ?
            """,
            (to_db_time(since),),
        )
        return row["avg_ms"]

    def archive(self, before: datetime) -> int:
        """Flag terminal records finished before ``before`` as archived."""
        count = self.db.execute(
            """
            UPDATE execution_records SET archived = 1
            WHERE archived = 0
              AND status IN ('completed', 'failed', 'timeout', 'cancelled')
              AND completed_at < ?
            """,
            (to_db_time(before),),
        )
        if count:
            logger.info("execution_records_archived", count=count)
        return count

    def recent(self, limit: int = 20, category: Optional[str] = None) -> list[ExecutionRecord]:
        if category:
            rows = self.db.fetch_all(
                "SELECT * FROM execution_records WHERE category = ? ORDER BY scheduled_at DESC LIMIT ?",
                (category, limit),
            )
        else:
            rows = self.db.fetch_all(
                "SELECT * FROM execution_records ORDER BY scheduled_at DESC LIMIT ?", (limit,)
            )
        return [ExecutionRecord.from_row(row) for row in rows]
