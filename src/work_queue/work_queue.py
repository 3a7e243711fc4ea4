"""
Shared work queue with exactly-once claim semantics.

Any number of workers call ``claim`` concurrently. Each claim is a single
conditional UPDATE executed under ``BEGIN IMMEDIATE``: rows are selected
and locked in the same statement, so two claims over the same backlog
always return disjoint items, and a claimant never waits on rows another
claim already took; it simply does not see them.

Abandoned work comes back on its own: a ``processing`` item whose lock
is older than the lock window is eligible for the next claim.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Optional, Sequence

import structlog

from ..core.config import CoordinatorSettings
from ..core.error_log import ErrorLogRepository
from ..core.errors import ConcurrencyConflictError, ErrorKind, ValidationError
from ..core.store import Database, from_db_time, from_json, to_db_time, to_json

logger = structlog.get_logger(__name__)


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PriorityTier(IntEnum):
    """Lower value is claimed first."""
    URGENT = 0
    HIGH = 1
    MEDIUM = 2
    LOW = 3


@dataclass
class QueueItem:
    """One unit of claimable work."""
    item_id: str
    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: QueueStatus = QueueStatus.QUEUED
    priority_tier: PriorityTier = PriorityTier.MEDIUM
    lock_owner: Optional[str] = None
    locked_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    next_eligible_at: Optional[datetime] = None
    error_detail: Optional[dict[str, Any]] = None
    result_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_dead_lettered(self) -> bool:
        return self.status == QueueStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "task_type": self.task_type,
            "payload": self.payload,
            "status": self.status.value,
            "priority_tier": self.priority_tier.name.lower(),
            "lock_owner": self.lock_owner,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_eligible_at": self.next_eligible_at.isoformat() if self.next_eligible_at else None,
            "error_detail": self.error_detail,
            "result_ref": self.result_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_row(cls, row) -> "QueueItem":
        return cls(
            item_id=row["item_id"],
            task_type=row["task_type"],
            payload=from_json(row["payload"]),
            status=QueueStatus(row["status"]),
            priority_tier=PriorityTier(row["priority_tier"]),
            lock_owner=row["lock_owner"],
            locked_at=from_db_time(row["locked_at"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            next_eligible_at=from_db_time(row["next_eligible_at"]),
            error_detail=from_json(row["error_detail"]) if row["error_detail"] else None,
            result_ref=row["result_ref"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            completed_at=from_db_time(row["completed_at"]),
        )


class WorkQueue:
    """Durable queue consumed by worker processes outside the tick loop."""

    def __init__(
        self,
        db: Database,
        settings: CoordinatorSettings,
        error_log: Optional[ErrorLogRepository] = None,
    ):
        self.db = db
        self.settings = settings
        self.error_log = error_log or ErrorLogRepository(db)

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lock_duration_minutes)

    def enqueue(
        self,
        task_type: str,
        payload: Optional[dict[str, Any]] = None,
        priority_tier: PriorityTier = PriorityTier.MEDIUM,
        item_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        available_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        """Add an item to the backlog."""
        if not task_type:
            raise ValidationError("task_type is required")
        if max_retries is not None and max_retries < 1:
            raise ValidationError("max_retries must allow at least one attempt", {"max_retries": max_retries})
        now = now or datetime.now()
        item = QueueItem(
            item_id=item_id or str(uuid.uuid4()),
            task_type=task_type,
            payload=payload or {},
            priority_tier=PriorityTier(priority_tier),
            max_retries=self.settings.max_retries if max_retries is None else max_retries,
            next_eligible_at=available_at,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO queue_items
                    (item_id, task_type, payload, status, priority_tier, retry_count,
                     max_retries, next_eligible_at, created_at, updated_at)
                VALUES (?, ?, ?, 'queued', ?, 0, ?, ?, ?, ?)
                """,
                (
                    item.item_id,
                    item.task_type,
                    to_json(item.payload),
                    int(item.priority_tier),
                    item.max_retries,
                    to_db_time(item.next_eligible_at),
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        logger.debug("queue_item_enqueued", item_id=item.item_id, task_type=task_type)
        return item

    def claim(
        self,
        n: int,
        worker_id: str,
        now: Optional[datetime] = None,
        task_types: Optional[Sequence[str]] = None,
    ) -> list[QueueItem]:
        """
        Atomically claim up to ``n`` eligible items for ``worker_id``.

        Eligible: queued and past ``next_eligible_at``, or processing with
        an expired lock; always ``retry_count < max_retries``. Ordered by
        priority tier then age.
        """
        if n < 0:
            raise ValidationError("claim size must be non-negative", {"n": n})
        if n == 0:
            return []
        if not worker_id:
            raise ValidationError("worker_id is required")

        now = now or datetime.now()
        stamp = to_db_time(now)
        lock_cutoff = to_db_time(now - self.lock_duration)

        type_filter = ""
        params: list[Any] = [worker_id, stamp, stamp, stamp, lock_cutoff]
        if task_types:
            type_filter = f"AND task_type IN ({', '.join('?' for _ in task_types)})"
            params.extend(task_types)
        params.append(n)

        with self.db.transaction() as conn:
            rows = conn.execute(
                f"""
                UPDATE queue_items SET
                    status = 'processing',
                    lock_owner = ?,
                    locked_at = ?,
                    updated_at = ?
                WHERE item_id IN (
                    SELECT item_id FROM queue_items
                    WHERE retry_count < max_retries
                      AND (
                        (status = 'queued'
                         AND (next_eligible_at IS NULL OR next_eligible_at <= ?))
                        OR (status = 'processing' AND locked_at < ?)
                      )
                      {type_filter}
                    ORDER BY priority_tier, created_at
                    LIMIT ?
                )
                RETURNING *
                """,
                params,
            ).fetchall()

        items = sorted(
            (QueueItem.from_row(row) for row in rows),
            key=lambda item: (item.priority_tier, item.created_at),
        )
        if items:
            logger.info("queue_items_claimed", worker_id=worker_id, count=len(items), requested=n)
        return items

    def _owned_or_raise(self, conn, item_id: str, worker_id: str):
        row = conn.execute("SELECT * FROM queue_items WHERE item_id = ?", (item_id,)).fetchone()
        if row is None:
            raise ValidationError(f"Unknown queue item: {item_id}", {"item_id": item_id})
        if row["status"] != QueueStatus.PROCESSING.value or row["lock_owner"] != worker_id:
            raise ConcurrencyConflictError(
                f"Item {item_id} is not locked by {worker_id}",
                {"item_id": item_id, "status": row["status"], "lock_owner": row["lock_owner"]},
            )
        return row

    def complete(
        self,
        item_id: str,
        worker_id: str,
        result_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        """Mark an item this worker holds as completed."""
        stamp = to_db_time(now or datetime.now())
        with self.db.transaction() as conn:
            self._owned_or_raise(conn, item_id, worker_id)
            row = conn.execute(
                """
                UPDATE queue_items SET
                    status = 'completed',
                    result_ref = ?,
                    completed_at = ?,
                    updated_at = ?,
                    lock_owner = NULL,
                    locked_at = NULL
                WHERE item_id = ?
                RETURNING *
                """,
                (result_ref, stamp, stamp, item_id),
            ).fetchone()
        logger.info("queue_item_completed", item_id=item_id, worker_id=worker_id)
        return QueueItem.from_row(row)

    def fail(
        self,
        item_id: str,
        worker_id: str,
        error: str,
        context: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        """
        Record a failed attempt.

        Below the retry limit the item goes back to ``queued`` after the
        backoff delay; at the limit it is dead-lettered with its full
        error history.
        """
        now = now or datetime.now()
        stamp = to_db_time(now)
        with self.db.transaction() as conn:
            row = self._owned_or_raise(conn, item_id, worker_id)
            retry_count = row["retry_count"] + 1
            detail = from_json(row["error_detail"], default={"attempts": []})
            detail.setdefault("attempts", []).append({
                "attempt": retry_count,
                "error": error,
                "worker_id": worker_id,
                "failed_at": now.isoformat(),
                "context": context or {},
            })
            detail["last_error"] = error

            if retry_count < row["max_retries"]:
                delay = self.settings.backoff_seconds(retry_count)
                updated = conn.execute(
                    """
                    UPDATE queue_items SET
                        status = 'queued',
                        retry_count = ?,
                        next_eligible_at = ?,
                        error_detail = ?,
                        lock_owner = NULL,
                        locked_at = NULL,
                        updated_at = ?
                    WHERE item_id = ?
                    RETURNING *
                    """,
                    (retry_count, to_db_time(now + timedelta(seconds=delay)), to_json(detail), stamp, item_id),
                ).fetchone()
                logger.info(
                    "queue_item_requeued",
                    item_id=item_id,
                    retry_count=retry_count,
                    backoff_seconds=delay,
                )
            else:
                updated = conn.execute(
                    """
                    UPDATE queue_items SET
                        status = 'failed',
                        retry_count = ?,
                        next_eligible_at = NULL,
                        error_detail = ?,
                        lock_owner = NULL,
                        locked_at = NULL,
                        completed_at = ?,
                        updated_at = ?
                    WHERE item_id = ?
                    RETURNING *
                    """,
                    (retry_count, to_json(detail), stamp, stamp, item_id),
                ).fetchone()
                self.error_log.record(
                    ErrorKind.PERMANENT_FAILURE,
                    f"Queue item {item_id} dead-lettered after {retry_count} attempts",
                    context={"item_id": item_id, "task_type": row["task_type"], "error_detail": detail},
                    worker_id=worker_id,
                    now=now,
                )
        return QueueItem.from_row(updated)

    def release(self, item_id: str, worker_id: str, now: Optional[datetime] = None) -> QueueItem:
        """Voluntarily hand an item back without counting an attempt."""
        stamp = to_db_time(now or datetime.now())
        with self.db.transaction() as conn:
            self._owned_or_raise(conn, item_id, worker_id)
            row = conn.execute(
                """
                UPDATE queue_items SET
                    status = 'queued',
                    lock_owner = NULL,
                    locked_at = NULL,
                    updated_at = ?
                WHERE item_id = ?
                RETURNING *
                """,
                (stamp, item_id),
            ).fetchone()
        logger.info("queue_item_released", item_id=item_id, worker_id=worker_id)
        return QueueItem.from_row(row)

    def reset_dead_letter(self, item_id: str, now: Optional[datetime] = None) -> QueueItem:
        """Manually return a dead-lettered item to the queue with a fresh retry budget."""
        now = now or datetime.now()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM queue_items WHERE item_id = ? AND status = 'failed'", (item_id,)
            ).fetchone()
            if row is None:
                raise ValidationError(f"Item {item_id} is not dead-lettered", {"item_id": item_id})
            detail = from_json(row["error_detail"], default={})
            detail.setdefault("resets", []).append(now.isoformat())
            row = conn.execute(
                """
                UPDATE queue_items SET
                    status = 'queued',
                    retry_count = 0,
                    next_eligible_at = NULL,
                    error_detail = ?,
                    completed_at = NULL,
                    updated_at = ?
                WHERE item_id = ?
                RETURNING *
                """,
                (to_json(detail), to_db_time(now), item_id),
            ).fetchone()
        logger.warning("dead_letter_reset", item_id=item_id)
        return QueueItem.from_row(row)

    def prevent_starvation(self, now: Optional[datetime] = None) -> int:
        """Promote queued items older than the starvation age by one tier."""
        now = now or datetime.now()
        cutoff = to_db_time(now - timedelta(minutes=self.settings.starvation_age_minutes))
        promoted = self.db.execute(
            """
            UPDATE queue_items SET
                priority_tier = priority_tier - 1,
                updated_at = ?
            WHERE status = 'queued'
              AND priority_tier > 0
              AND created_at <= ?
            """,
            (to_db_time(now), cutoff),
        )
        if promoted:
            logger.info("queue_items_promoted", count=promoted)
        return promoted

    def get(self, item_id: str) -> Optional[QueueItem]:
        row = self.db.fetch_one("SELECT * FROM queue_items WHERE item_id = ?", (item_id,))
        return QueueItem.from_row(row) if row else None

    def dead_letters(self, limit: int = 100) -> list[QueueItem]:
        rows = self.db.fetch_all(
            "SELECT * FROM queue_items WHERE status = 'failed' ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        )
        return [QueueItem.from_row(row) for row in rows]

    def backlog_size(self, task_type: Optional[str] = None) -> int:
        """Queued items still within their retry budget."""
        sql = "SELECT COUNT(*) AS n FROM queue_items WHERE status = 'queued' AND retry_count < max_retries"
        params: tuple = ()
        if task_type:
            sql += " AND task_type = ?"
            params = (task_type,)
        return self.db.fetch_one(sql, params)["n"]

    def depth(self) -> int:
        """Items not yet finished (queued or processing)."""
        row = self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM queue_items WHERE status IN ('queued', 'processing')"
        )
        return row["n"]

    def stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or datetime.now()
        rows = self.db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM queue_items GROUP BY status"
        )
        by_status = {status.value: 0 for status in QueueStatus}
        by_status.update({row["status"]: row["n"] for row in rows})

        oldest = self.db.fetch_one(
            "SELECT MIN(created_at) AS oldest FROM queue_items WHERE status = 'queued'"
        )["oldest"]
        oldest_age = (now - from_db_time(oldest)).total_seconds() if oldest else 0.0

        expired = self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM queue_items WHERE status = 'processing' AND locked_at < ?",
            (to_db_time(now - self.lock_duration),),
        )["n"]

        return {
            "by_status": by_status,
            "depth": by_status["queued"] + by_status["processing"],
            "dead_lettered": by_status["failed"],
            "expired_locks": expired,
            "oldest_queued_seconds": oldest_age,
        }
