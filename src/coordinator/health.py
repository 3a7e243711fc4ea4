"""Health gate: the first step of every tick."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog

from ..core.config import CoordinatorSettings
from ..work_queue.work_queue import WorkQueue
from .records import ExecutionRecordRepository

logger = structlog.get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Violation:
    check: str
    message: str
    value: float
    limit: float
    blocking: bool

    def to_dict(self) -> dict:
        return {
            "check": self.check,
            "message": self.message,
            "value": self.value,
            "limit": self.limit,
            "blocking": self.blocking,
        }


@dataclass(frozen=True)
class HealthReport:
    can_proceed: bool
    status: HealthStatus
    violations: tuple[Violation, ...] = ()
    active_executions: int = 0
    recent_failures: int = 0
    queue_depth: int = 0
    avg_latency_ms: Optional[float] = None

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if not v.blocking]

    def to_dict(self) -> dict:
        return {
            "can_proceed": self.can_proceed,
            "status": self.status.value,
            "violations": [v.to_dict() for v in self.violations],
            "active_executions": self.active_executions,
            "recent_failures": self.recent_failures,
            "queue_depth": self.queue_depth,
            "avg_latency_ms": self.avg_latency_ms,
        }


class HealthGate:
    """Refuses a tick when system-wide limits are already violated."""

    def __init__(
        self,
        records: ExecutionRecordRepository,
        queue: WorkQueue,
        settings: CoordinatorSettings,
    ):
        self.records = records
        self.queue = queue
        self.settings = settings

    def check(self, now: datetime) -> HealthReport:
        window_start = now - timedelta(minutes=self.settings.failure_window_minutes)
        active = self.records.count_active(live_at=now)
        failures = self.records.failures_since(window_start)
        depth = self.queue.depth()
        latency = self.records.avg_latency_ms(window_start)

        violations = []
        if active >= self.settings.max_concurrent_executions:
            violations.append(Violation(
                "concurrency",
                f"{active} active executions, limit {self.settings.max_concurrent_executions}",
                active,
                self.settings.max_concurrent_executions,
                blocking=True,
            ))
        if failures > self.settings.max_recent_failures:
            violations.append(Violation(
                "failure_rate",
                f"{failures} failures in the last {self.settings.failure_window_minutes} min",
                failures,
                self.settings.max_recent_failures,
                blocking=True,
            ))
        if depth > self.settings.queue_depth_warning:
            violations.append(Violation(
                "queue_depth",
                f"Queue backlog at {depth} items",
                depth,
                self.settings.queue_depth_warning,
                blocking=False,
            ))
        if latency is not None and latency > self.settings.avg_latency_warning_ms:
            violations.append(Violation(
                "latency",
                f"Average execution latency {latency:.0f} ms",
                latency,
                self.settings.avg_latency_warning_ms,
                blocking=False,
            ))

        blocking = any(v.blocking for v in violations)
        if blocking:
            status = HealthStatus.CRITICAL
        elif violations:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        report = HealthReport(
            can_proceed=not blocking,
            status=status,
            violations=tuple(violations),
            active_executions=active,
            recent_failures=failures,
            queue_depth=depth,
            avg_latency_ms=latency,
        )
        if blocking:
            logger.warning("health_gate_blocked", violations=[v.check for v in violations if v.blocking])
        elif violations:
            logger.info("health_gate_warnings", warnings=[v.check for v in violations])
        return report
