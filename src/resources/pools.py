"""
Resource Pool Tracker.

Tracks per-resource usage against capacity for the shared constrained
resources every category draws on:

- external_calls: third-party call quota (consumed, reset per window)
- budget: monetary budget (consumed, reset daily)
- memory: memory in MB (held while an execution is live)
- connections: connection pool slots (held while an execution is live)

Pool status is always derived from the counters, never stored.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.errors import ConcurrencyConflictError, ResourceExhaustionError, ValidationError
from ..core.store import Database, from_db_time, to_db_time, to_json

logger = structlog.get_logger(__name__)

# Float slack for currency arithmetic in the capacity guard
_EPSILON = 1e-9


class ResourceType(str, Enum):
    """Shared resources a category can consume."""
    EXTERNAL_CALLS = "external_calls"
    BUDGET = "budget"
    MEMORY = "memory"
    CONNECTIONS = "connections"

    @property
    def is_held(self) -> bool:
        """Held resources return to the pool when an execution ends."""
        return self in (ResourceType.MEMORY, ResourceType.CONNECTIONS)


class PoolStatus(str, Enum):
    """Derived pool health, worst first."""
    UNAVAILABLE = "unavailable"
    CRITICAL = "critical"
    WARNING = "warning"
    HEALTHY = "healthy"


@dataclass(frozen=True)
class ResourcePool:
    """Point-in-time view of one pool."""
    resource_type: str
    used_amount: float
    total_capacity: float
    soft_limit: Optional[float] = None
    hard_limit: Optional[float] = None
    burst_allowance: float = 0.0
    consecutive_errors: int = 0
    last_error_at: Optional[datetime] = None
    is_available: bool = True
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def utilization(self) -> float:
        return self.used_amount / self.total_capacity if self.total_capacity else 1.0

    @property
    def remaining(self) -> float:
        """Capacity left before the nominal limit."""
        return max(0.0, self.total_capacity - self.used_amount)

    @property
    def headroom(self) -> float:
        """Capacity left including the burst allowance."""
        return max(0.0, self.total_capacity + self.burst_allowance - self.used_amount)

    def is_tripped(
        self,
        error_threshold: int = 5,
        now: Optional[datetime] = None,
        cooldown_seconds: Optional[int] = None,
    ) -> bool:
        """
        Too many consecutive errors.

        Once ``cooldown_seconds`` have passed since the last error the pool
        is half-open: it admits work again, and the next error trips it anew.
        """
        if self.consecutive_errors < error_threshold:
            return False
        if now is None or cooldown_seconds is None or self.last_error_at is None:
            return True
        return now - self.last_error_at < timedelta(seconds=cooldown_seconds)

    def status(
        self,
        warning: float = 0.70,
        critical: float = 0.90,
        error_threshold: int = 5,
        now: Optional[datetime] = None,
        error_cooldown_seconds: Optional[int] = None,
    ) -> PoolStatus:
        if not self.is_available or self.is_tripped(error_threshold, now, error_cooldown_seconds):
            return PoolStatus.UNAVAILABLE
        if self.utilization > critical:
            return PoolStatus.CRITICAL
        if self.utilization > warning:
            return PoolStatus.WARNING
        return PoolStatus.HEALTHY

    def to_dict(self) -> dict:
        return {
            "resource_type": self.resource_type,
            "used_amount": self.used_amount,
            "total_capacity": self.total_capacity,
            "utilization": round(self.utilization, 4),
            "remaining": self.remaining,
            "burst_allowance": self.burst_allowance,
            "consecutive_errors": self.consecutive_errors,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "is_available": self.is_available,
            "version": self.version,
        }


@dataclass(frozen=True)
class PoolSnapshot:
    """All pools read in one statement; planning uses only this view."""
    pools: dict[str, ResourcePool]
    taken_at: datetime
    warning_utilization: float = 0.70
    critical_utilization: float = 0.90
    error_threshold: int = 5
    error_cooldown_seconds: Optional[int] = None
    statuses: dict[str, PoolStatus] = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "statuses", {
            name: pool.status(
                self.warning_utilization,
                self.critical_utilization,
                self.error_threshold,
                self.taken_at,
                self.error_cooldown_seconds,
            )
            for name, pool in self.pools.items()
        })

    def get(self, resource_type: str) -> Optional[ResourcePool]:
        return self.pools.get(str(resource_type))

    def status_of(self, resource_type: str) -> Optional[PoolStatus]:
        return self.statuses.get(str(resource_type))

    def remaining(self, resource_type: str) -> float:
        pool = self.get(resource_type)
        return pool.remaining if pool else 0.0

    def versions(self, resource_types: Optional[Iterable[str]] = None) -> dict[str, int]:
        names = self.pools.keys() if resource_types is None else resource_types
        return {name: self.pools[name].version for name in names if name in self.pools}

    def to_dict(self) -> dict:
        return {
            "taken_at": self.taken_at.isoformat(),
            "pools": {
                name: {**pool.to_dict(), "status": self.statuses[name].value}
                for name, pool in self.pools.items()
            },
        }


def _row_to_pool(row) -> ResourcePool:
    return ResourcePool(
        resource_type=row["resource_type"],
        used_amount=row["used_amount"],
        total_capacity=row["total_capacity"],
        soft_limit=row["soft_limit"],
        hard_limit=row["hard_limit"],
        burst_allowance=row["burst_allowance"],
        consecutive_errors=row["consecutive_errors"],
        last_error_at=from_db_time(row["last_error_at"]),
        is_available=bool(row["is_available"]),
        version=row["version"],
        updated_at=from_db_time(row["updated_at"]),
    )


class ResourcePoolTracker:
    """
    Durable usage counters with single-writer-per-pool updates.

    Every mutation is one conditional UPDATE inside ``BEGIN IMMEDIATE``
    and bumps the pool's version, so a reservation planned against an
    older snapshot can be refused instead of overbooking the pool.
    """

    def __init__(self, db: Database, settings: CoordinatorSettings):
        self.db = db
        self.settings = settings

    def _capacities(self) -> dict[str, tuple[float, float, Optional[int]]]:
        """Capacity, burst allowance and accounting window per pool."""
        s = self.settings
        return {
            ResourceType.EXTERNAL_CALLS.value: (
                s.external_call_quota, s.external_call_burst, s.external_call_window_seconds
            ),
            ResourceType.BUDGET.value: (s.daily_budget, s.budget_burst, s.budget_window_seconds),
            ResourceType.MEMORY.value: (s.memory_ceiling_mb, s.memory_burst_mb, None),
            ResourceType.CONNECTIONS.value: (s.connection_ceiling, s.connection_burst, None),
        }

    def ensure_pools(self, now: Optional[datetime] = None) -> None:
        """Create missing pools and sync capacities from settings."""
        stamp = to_db_time(now or datetime.now())
        with self.db.transaction() as conn:
            for name, (capacity, burst, window) in self._capacities().items():
                conn.execute(
                    """
                    INSERT INTO resource_pools
                        (resource_type, used_amount, total_capacity, soft_limit,
                         hard_limit, burst_allowance, window_seconds,
                         window_started_at, updated_at)
                    VALUES (?, 0, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(resource_type) DO UPDATE SET
                        total_capacity = excluded.total_capacity,
                        soft_limit = excluded.soft_limit,
                        hard_limit = excluded.hard_limit,
                        burst_allowance = excluded.burst_allowance,
                        window_seconds = excluded.window_seconds
                    """,
                    (
                        name,
                        capacity,
                        capacity * self.settings.warning_utilization,
                        capacity + burst,
                        burst,
                        window,
                        stamp if window else None,
                        stamp,
                    ),
                )
        logger.debug("resource_pools_ensured", pools=list(self._capacities()))

    def reset_expired_windows(self, now: Optional[datetime] = None) -> list[str]:
        """Zero consumed pools whose accounting window has elapsed."""
        now = now or datetime.now()
        stamp = to_db_time(now)
        reset = []
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT resource_type, window_seconds, window_started_at
                FROM resource_pools WHERE window_seconds IS NOT NULL
                """
            ).fetchall()
            for row in rows:
                started = from_db_time(row["window_started_at"])
                if started is not None and now - started < timedelta(seconds=row["window_seconds"]):
                    continue
                conn.execute(
                    """
                    UPDATE resource_pools SET
                        used_amount = 0,
                        window_started_at = ?,
                        version = version + 1,
                        updated_at = ?
                    WHERE resource_type = ?
                    """,
                    (stamp, stamp, row["resource_type"]),
                )
                reset.append(row["resource_type"])
        if reset:
            logger.info("accounting_windows_reset", resource_types=reset)
        return reset

    def snapshot(self, now: Optional[datetime] = None) -> PoolSnapshot:
        """Read every pool in one consistent statement."""
        rows = self.db.fetch_all("SELECT * FROM resource_pools ORDER BY resource_type")
        return PoolSnapshot(
            pools={row["resource_type"]: _row_to_pool(row) for row in rows},
            taken_at=now or datetime.now(),
            warning_utilization=self.settings.warning_utilization,
            critical_utilization=self.settings.critical_utilization,
            error_threshold=self.settings.unavailable_error_threshold,
            error_cooldown_seconds=self.settings.pool_error_cooldown_seconds,
        )

    def get(self, resource_type: str) -> Optional[ResourcePool]:
        row = self.db.fetch_one(
            "SELECT * FROM resource_pools WHERE resource_type = ?", (str(resource_type),)
        )
        return _row_to_pool(row) if row else None

    def reserve(
        self,
        amounts: dict[str, float],
        expected_versions: Optional[dict[str, int]] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, int]:
        """
        Add ``amounts`` to their pools as one all-or-nothing step.

        Args:
            amounts: Amount to reserve per resource type.
            expected_versions: Pool versions the caller planned against;
                any mismatch refuses the whole reservation.
            now: Timestamp for the update.

        Returns:
            New version of every touched pool.

        Raises:
            ValidationError: Unknown pool or negative amount.
            ConcurrencyConflictError: A pool changed since the caller's snapshot.
            ResourceExhaustionError: A pool cannot absorb its amount.
        """
        expected_versions = expected_versions or {}
        stamp = to_db_time(now or datetime.now())
        new_versions: dict[str, int] = {}

        with self.db.transaction() as conn:
            for name in sorted(amounts):
                amount = amounts[name]
                if amount < 0:
                    raise ValidationError(
                        f"Negative reservation for {name}", {"resource_type": name, "amount": amount}
                    )
                if amount == 0:
                    continue

                expected = expected_versions.get(name)
                row = conn.execute(
                    """
                    UPDATE resource_pools SET
                        used_amount = used_amount + ?,
                        version = version + 1,
                        updated_at = ?
                    WHERE resource_type = ?
                      AND is_available = 1
                      AND used_amount + ? <= total_capacity + burst_allowance + ?
                      AND (? IS NULL OR version = ?)
                    RETURNING version
                    """,
                    (amount, stamp, name, amount, _EPSILON, expected, expected),
                ).fetchone()
                if row is None:
                    self._raise_refusal(conn, name, amount, expected)
                new_versions[name] = row["version"]

        logger.info("resources_reserved", amounts=amounts, versions=new_versions)
        return new_versions

    def _raise_refusal(self, conn, name: str, amount: float, expected: Optional[int]) -> None:
        current = conn.execute(
            "SELECT * FROM resource_pools WHERE resource_type = ?", (name,)
        ).fetchone()
        if current is None:
            raise ValidationError(f"Unknown resource pool: {name}", {"resource_type": name})
        pool = _row_to_pool(current)
        context = {"resource_type": name, "amount": amount, **pool.to_dict()}
        if expected is not None and pool.version != expected:
            raise ConcurrencyConflictError(
                f"Pool {name} changed since snapshot (expected v{expected}, found v{pool.version})",
                {**context, "expected_version": expected},
            )
        if not pool.is_available:
            raise ResourceExhaustionError(f"Pool {name} is unavailable", context)
        raise ResourceExhaustionError(
            f"Pool {name} cannot absorb {amount} (headroom {pool.headroom})", context
        )

    def release(self, amounts: dict[str, float], now: Optional[datetime] = None) -> None:
        """Return amounts to their pools; usage never drops below zero."""
        stamp = to_db_time(now or datetime.now())
        with self.db.transaction() as conn:
            for name in sorted(amounts):
                amount = amounts[name]
                if amount <= 0:
                    continue
                conn.execute(
                    """
                    UPDATE resource_pools SET
                        used_amount = MAX(0, used_amount - ?),
                        version = version + 1,
                        updated_at = ?
                    WHERE resource_type = ?
                    """,
                    (amount, stamp, name),
                )
        logger.info("resources_released", amounts=amounts)

    def adjust(self, resource_type: str, delta: float, now: Optional[datetime] = None) -> None:
        """Apply an accounting correction (actual vs estimated) without a capacity guard."""
        if delta == 0:
            return
        self.db.execute(
            """
            UPDATE resource_pools SET
                used_amount = MAX(0, used_amount + ?),
                version = version + 1,
                updated_at = ?
            WHERE resource_type = ?
            """,
            (delta, to_db_time(now or datetime.now()), str(resource_type)),
        )
        logger.debug("resource_adjusted", resource_type=str(resource_type), delta=delta)

    def record_error(self, resource_type: str, now: Optional[datetime] = None) -> int:
        """Count a failure against a pool; returns the new consecutive count."""
        stamp = to_db_time(now or datetime.now())
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                UPDATE resource_pools SET
                    consecutive_errors = consecutive_errors + 1,
                    last_error_at = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE resource_type = ?
                RETURNING consecutive_errors
                """,
                (stamp, stamp, str(resource_type)),
            ).fetchone()
        if row is None:
            raise ValidationError(f"Unknown resource pool: {resource_type}")
        count = row["consecutive_errors"]
        if count >= self.settings.unavailable_error_threshold:
            logger.warning("resource_pool_unavailable", resource_type=str(resource_type), errors=count)
        return count

    def record_success(self, resource_type: str, now: Optional[datetime] = None) -> None:
        self.db.execute(
            """
            UPDATE resource_pools SET
                consecutive_errors = 0,
                version = version + 1,
                updated_at = ?
            WHERE resource_type = ? AND consecutive_errors > 0
            """,
            (to_db_time(now or datetime.now()), str(resource_type)),
        )

    def set_availability(
        self, resource_type: str, available: bool, now: Optional[datetime] = None
    ) -> None:
        self.db.execute(
            """
            UPDATE resource_pools SET
                is_available = ?,
                version = version + 1,
                updated_at = ?
            WHERE resource_type = ?
            """,
            (int(available), to_db_time(now or datetime.now()), str(resource_type)),
        )
        logger.info("resource_availability_changed", resource_type=str(resource_type), available=available)

    def reset_usage(
        self,
        resource_types: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Zero consumed counters at the start of a new accounting window."""
        if resource_types is None:
            resource_types = [t.value for t in ResourceType if not t.is_held]
        stamp = to_db_time(now or datetime.now())
        with self.db.transaction() as conn:
            for name in resource_types:
                conn.execute(
                    """
                    UPDATE resource_pools SET
                        used_amount = 0,
                        version = version + 1,
                        updated_at = ?
                    WHERE resource_type = ?
                    """,
                    (stamp, str(name)),
                )
        logger.info("resource_usage_reset", resource_types=[str(n) for n in resource_types])

    def sample_usage(
        self,
        now: Optional[datetime] = None,
        execution_id: Optional[str] = None,
        category: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PoolSnapshot:
        """Write one ResourceUsageSample per pool from a fresh snapshot."""
        now = now or datetime.now()
        snap = self.snapshot(now)
        with self.db.transaction() as conn:
            for name, pool in snap.pools.items():
                conn.execute(
                    """
                    INSERT INTO resource_usage_samples
                        (timestamp, resource_type, used_amount, total_capacity,
                         utilization, execution_id, category, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        to_db_time(now),
                        name,
                        pool.used_amount,
                        pool.total_capacity,
                        pool.utilization,
                        execution_id,
                        category,
                        to_json({**(metadata or {}), "status": snap.statuses[name].value}),
                    ),
                )
        return snap

    def recent_samples(self, resource_type: str, limit: int = 60) -> list[dict]:
        rows = self.db.fetch_all(
            """
            SELECT timestamp, used_amount, total_capacity, utilization
            FROM resource_usage_samples
            WHERE resource_type = ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            (str(resource_type), limit),
        )
        return [dict(row) for row in rows]
