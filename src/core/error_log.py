"""Durable error records: every failure path writes one row."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from .errors import CoordinatorError, ErrorKind
from .store import Database, from_db_time, from_json, to_db_time, to_json

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ErrorRecord:
    """One persisted failure."""
    kind: ErrorKind
    message: str
    created_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    worker_id: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
            "worker_id": self.worker_id,
            "created_at": self.created_at.isoformat(),
        }


class ErrorLogRepository:
    """Append-only store of failures for manual review and reconciliation."""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        kind: ErrorKind,
        message: str,
        context: Optional[dict[str, Any]] = None,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ErrorRecord:
        """Persist a failure and log it."""
        entry = ErrorRecord(
            kind=kind,
            message=message,
            created_at=now or datetime.now(),
            context=context or {},
            worker_id=worker_id,
        )
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO error_log (kind, message, context, worker_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.kind.value,
                    entry.message,
                    to_json(entry.context),
                    entry.worker_id,
                    to_db_time(entry.created_at),
                ),
            )
            row_id = cursor.lastrowid

        log = logger.error if kind.is_fatal or kind is ErrorKind.PERMANENT_FAILURE else logger.warning
        log("error_recorded", kind=kind.value, message=message, worker_id=worker_id)
        return ErrorRecord(**{**entry.__dict__, "id": row_id})

    def record_exception(
        self,
        error: CoordinatorError,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
        **extra: Any,
    ) -> ErrorRecord:
        """Persist a CoordinatorError with its own context plus extras."""
        return self.record(
            error.kind,
            error.message,
            context={**error.context, **extra},
            worker_id=worker_id,
            now=now,
        )

    def recent(
        self,
        kind: Optional[ErrorKind] = None,
        limit: int = 100,
    ) -> list[ErrorRecord]:
        """Newest-first error records, optionally filtered by kind."""
        if kind:
            rows = self.db.fetch_all(
                "SELECT * FROM error_log WHERE kind = ? ORDER BY id DESC LIMIT ?",
                (kind.value, limit),
            )
        else:
            rows = self.db.fetch_all(
                "SELECT * FROM error_log ORDER BY id DESC LIMIT ?", (limit,)
            )
        return [
            ErrorRecord(
                id=row["id"],
                kind=ErrorKind(row["kind"]),
                message=row["message"],
                context=from_json(row["context"]),
                worker_id=row["worker_id"],
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
