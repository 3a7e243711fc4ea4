"""
Rolling execution metrics.

Aggregates terminal execution records into fixed trailing windows
(1 minute, 5 minutes, 1 hour) per category, plus a longer execution
summary used by the dashboard and the recommendation engine.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

import structlog

from ..core.store import Database, to_db_time

logger = structlog.get_logger(__name__)

ALL_CATEGORIES = "__all__"


class MetricWindow(Enum):
    """Trailing windows, valued in minutes."""
    ONE_MINUTE = 1
    FIVE_MINUTES = 5
    ONE_HOUR = 60

    @property
    def label(self) -> str:
        return {1: "1m", 5: "5m", 60: "1h"}[self.value]

    @property
    def delta(self) -> timedelta:
        return timedelta(minutes=self.value)


@dataclass(frozen=True)
class WindowMetrics:
    """Aggregates for one category over one trailing window."""
    category: str
    window: MetricWindow
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    total_duration_ms: float = 0.0
    duration_samples: int = 0
    cost: float = 0.0

    @property
    def terminal(self) -> int:
        return self.completed + self.failed + self.timed_out

    @property
    def error_count(self) -> int:
        return self.failed + self.timed_out

    @property
    def throughput_per_minute(self) -> float:
        return self.terminal / self.window.value

    @property
    def success_rate(self) -> Optional[float]:
        return self.completed / self.terminal if self.terminal else None

    @property
    def mean_duration_ms(self) -> Optional[float]:
        return self.total_duration_ms / self.duration_samples if self.duration_samples else None

    def merge(self, other: "WindowMetrics", category: str) -> "WindowMetrics":
        return WindowMetrics(
            category=category,
            window=self.window,
            completed=self.completed + other.completed,
            failed=self.failed + other.failed,
            timed_out=self.timed_out + other.timed_out,
            total_duration_ms=self.total_duration_ms + other.total_duration_ms,
            duration_samples=self.duration_samples + other.duration_samples,
            cost=self.cost + other.cost,
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "window": self.window.label,
            "throughput_per_minute": round(self.throughput_per_minute, 4),
            "success_rate": round(self.success_rate, 4) if self.success_rate is not None else None,
            "mean_duration_ms": round(self.mean_duration_ms, 1) if self.mean_duration_ms is not None else None,
            "error_count": self.error_count,
            "cost": round(self.cost, 4),
        }


@dataclass(frozen=True)
class ExecutionStats:
    """Execution totals over a trailing period."""
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    avg_duration_ms: Optional[float] = None
    total_cost: float = 0.0

    @property
    def success_rate(self) -> Optional[float]:
        finished = self.completed + self.failed + self.timed_out
        return self.completed / finished if finished else None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "success_rate": round(self.success_rate, 4) if self.success_rate is not None else None,
            "avg_duration_ms": self.avg_duration_ms,
            "total_cost": round(self.total_cost, 4),
        }


MetricsByCategory = dict[str, dict[str, WindowMetrics]]


class MetricsAggregator:
    """Reads execution records and rolls them into windows."""

    def __init__(self, db: Database):
        self.db = db

    def window(self, window: MetricWindow, now: datetime) -> dict[str, WindowMetrics]:
        """Per-category metrics for records that finished inside the window."""
        rows = self.db.fetch_all(
            """
            SELECT
                category,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status = 'timeout' THEN 1 ELSE 0 END) AS timed_out,
                COALESCE(SUM(actual_duration_ms), 0) AS total_duration_ms,
                COUNT(actual_duration_ms) AS duration_samples,
                COALESCE(SUM(COALESCE(actual_cost, estimated_cost)), 0) AS cost
            FROM execution_records
            WHERE status IN ('completed', 'failed', 'timeout')
              AND completed_at > ?
              AND completed_at <= ?
            GROUP BY category
            """,
            (to_db_time(now - window.delta), to_db_time(now)),
        )
        return {
            row["category"]: WindowMetrics(
                category=row["category"],
                window=window,
                completed=row["completed"],
                failed=row["failed"],
                timed_out=row["timed_out"],
                total_duration_ms=row["total_duration_ms"],
                duration_samples=row["duration_samples"],
                cost=row["cost"],
            )
            for row in rows
        }

    def collect(
        self,
        now: datetime,
        categories: Iterable[str] = (),
        windows: Iterable[MetricWindow] = tuple(MetricWindow),
    ) -> MetricsByCategory:
        """
        Metrics for every window, keyed ``category -> window label``.

        Listed categories always appear (empty when idle), and the
        ``ALL_CATEGORIES`` key holds the system-wide totals.
        """
        result: MetricsByCategory = {}
        for window in windows:
            per_category = self.window(window, now)
            total = WindowMetrics(category=ALL_CATEGORIES, window=window)
            for category in set(categories) | set(per_category):
                metrics = per_category.get(category, WindowMetrics(category=category, window=window))
                result.setdefault(category, {})[window.label] = metrics
                total = total.merge(metrics, ALL_CATEGORIES)
            result.setdefault(ALL_CATEGORIES, {})[window.label] = total
        return result

    def execution_stats(self, now: datetime, hours: int = 24) -> ExecutionStats:
        """Execution totals for records scheduled in the trailing ``hours``."""
        row = self.db.fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END) AS running,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status = 'timeout' THEN 1 ELSE 0 END) AS timed_out,
                SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled,
                AVG(actual_duration_ms) AS avg_duration_ms,
                COALESCE(SUM(actual_cost), 0) AS total_cost
            FROM execution_records
            WHERE scheduled_at > ?
            """,
            (to_db_time(now - timedelta(hours=hours)),),
        )
        return ExecutionStats(
            total=row["total"] or 0,
            pending=row["pending"] or 0,
            running=row["running"] or 0,
            completed=row["completed"] or 0,
            failed=row["failed"] or 0,
            timed_out=row["timed_out"] or 0,
            cancelled=row["cancelled"] or 0,
            avg_duration_ms=row["avg_duration_ms"],
            total_cost=row["total_cost"] or 0.0,
        )
