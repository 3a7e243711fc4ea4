"""
Advisory recommendations.

Recommendations propose mitigations (shrink a batch, throttle a
category, slow down spend); nothing in the coordinator applies them.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.store import Database, from_db_time, to_db_time
from ..resources.pools import PoolSnapshot, PoolStatus, ResourceType
from .metrics import ALL_CATEGORIES, ExecutionStats, MetricsByCategory

logger = structlog.get_logger(__name__)


class RecommendationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Recommendation:
    """One proposed mitigation."""
    rec_type: str
    priority: RecommendationPriority
    message: str
    action: str
    category: Optional[str] = None
    resource_type: Optional[str] = None
    metric_value: Optional[float] = None
    target_value: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.rec_type,
            "priority": self.priority.value,
            "message": self.message,
            "action": self.action,
            "category": self.category,
            "resource_type": self.resource_type,
            "metric_value": self.metric_value,
            "target_value": self.target_value,
            "created_at": self.created_at.isoformat(),
        }


def pool_recommendations(snapshot: PoolSnapshot) -> list[Recommendation]:
    """Advice for every pool past its warning threshold."""
    recs = []
    for name, pool in sorted(snapshot.pools.items()):
        status = snapshot.statuses[name]
        if status is PoolStatus.HEALTHY:
            continue
        common = dict(
            resource_type=name,
            metric_value=round(pool.utilization, 4),
            target_value=snapshot.warning_utilization,
            created_at=snapshot.taken_at,
        )
        if status is PoolStatus.UNAVAILABLE:
            recs.append(Recommendation(
                "pool_recovery",
                RecommendationPriority.CRITICAL,
                f"Pool {name} is unavailable ({pool.consecutive_errors} consecutive errors)",
                "investigate_pool_errors",
                **common,
            ))
        elif name == ResourceType.BUDGET.value:
            recs.append(Recommendation(
                "budget_optimization",
                RecommendationPriority.CRITICAL if pool.utilization > 0.85 else RecommendationPriority.HIGH,
                "Daily budget nearly exhausted, throttle expensive operations",
                "enable_budget_throttling",
                **common,
            ))
        elif name == ResourceType.EXTERNAL_CALLS.value:
            recs.append(Recommendation(
                "api_optimization",
                RecommendationPriority.HIGH,
                "External call usage is high, consider reducing batch sizes",
                "reduce_batch_sizes",
                **common,
            ))
        elif name == ResourceType.CONNECTIONS.value:
            recs.append(Recommendation(
                "system_optimization",
                RecommendationPriority.MEDIUM,
                "Connection pool usage is high, optimize query patterns",
                "optimize_connection_usage",
                **common,
            ))
        else:
            recs.append(Recommendation(
                "system_optimization",
                RecommendationPriority.HIGH if status is PoolStatus.CRITICAL else RecommendationPriority.MEDIUM,
                f"Pool {name} is {status.value} ({pool.utilization:.0%} used)",
                f"stagger_{name}_heavy_categories",
                **common,
            ))
    return recs


class RecommendationEngine:
    """Inspects aggregates and proposes mitigations."""

    def __init__(self, settings: CoordinatorSettings):
        self.settings = settings

    def generate(
        self,
        stats: ExecutionStats,
        metrics: MetricsByCategory,
        snapshot: Optional[PoolSnapshot],
        now: datetime,
    ) -> list[Recommendation]:
        recs: list[Recommendation] = []

        success = stats.success_rate
        if success is not None and success < self.settings.success_rate_warning:
            recs.append(Recommendation(
                "reliability",
                RecommendationPriority.CRITICAL
                if success < self.settings.success_rate_critical
                else RecommendationPriority.HIGH,
                f"Success rate is {success:.1%}. Investigate failed executions.",
                "review_error_log",
                metric_value=success,
                target_value=self.settings.success_rate_warning,
                created_at=now,
            ))

        if stats.avg_duration_ms and stats.avg_duration_ms > self.settings.duration_warning_ms:
            recs.append(Recommendation(
                "performance",
                RecommendationPriority.MEDIUM,
                f"Average execution time is {stats.avg_duration_ms / 1000:.0f} seconds.",
                "reduce_batch_sizes",
                metric_value=stats.avg_duration_ms,
                target_value=180_000,
                created_at=now,
            ))

        recs.extend(self._category_recommendations(metrics, now))

        if snapshot is not None and snapshot.pools:
            healthy = sum(1 for s in snapshot.statuses.values() if s is PoolStatus.HEALTHY)
            health = healthy / len(snapshot.pools)
            if health < 0.8:
                recs.append(Recommendation(
                    "health",
                    RecommendationPriority.CRITICAL,
                    f"Only {health:.0%} of resource pools are healthy.",
                    "investigate_resource_pools",
                    metric_value=health,
                    target_value=0.95,
                    created_at=now,
                ))
            calls = snapshot.get(ResourceType.EXTERNAL_CALLS.value)
            if calls is not None and calls.utilization > 0.8:
                recs.append(Recommendation(
                    "resource_optimization",
                    RecommendationPriority.MEDIUM,
                    "External call utilization is high. Consider rate limiting.",
                    "reduce_call_frequency",
                    resource_type=ResourceType.EXTERNAL_CALLS.value,
                    metric_value=calls.utilization,
                    target_value=0.7,
                    created_at=now,
                ))

        if not recs:
            recs.append(Recommendation(
                "optimization",
                RecommendationPriority.LOW,
                "All metrics are within healthy ranges.",
                "none",
                metric_value=1.0,
                target_value=1.0,
                created_at=now,
            ))
        return recs

    def _category_recommendations(self, metrics: MetricsByCategory, now: datetime) -> list[Recommendation]:
        recs = []
        for category_id, by_window in sorted(metrics.items()):
            if category_id == ALL_CATEGORIES:
                continue
            config = self.settings.category(category_id)
            hour = by_window.get("1h")
            if config is None or hour is None or hour.terminal == 0:
                continue
            if hour.success_rate is not None and hour.success_rate < config.success_rate_floor:
                recs.append(Recommendation(
                    "shrink_batch",
                    RecommendationPriority.HIGH,
                    f"{category_id} success rate {hour.success_rate:.1%} is below its floor "
                    f"{config.success_rate_floor:.0%}; smaller batches fail less expensively.",
                    "reduce_batch_size",
                    category=category_id,
                    metric_value=hour.success_rate,
                    target_value=config.success_rate_floor,
                    created_at=now,
                ))
            if hour.error_count >= self.settings.error_count_warning:
                recs.append(Recommendation(
                    "throttle_category",
                    RecommendationPriority.HIGH,
                    f"{category_id} failed {hour.error_count} times in the last hour.",
                    "throttle_category",
                    category=category_id,
                    metric_value=float(hour.error_count),
                    target_value=float(self.settings.error_count_warning),
                    created_at=now,
                ))
        return recs


class RecommendationRepository:
    """Write-once store of generated recommendations."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, recommendations: list[Recommendation]) -> int:
        with self.db.transaction() as conn:
            for rec in recommendations:
                conn.execute(
                    """
                    INSERT INTO recommendations
                        (rec_type, priority, category, resource_type, message, action,
                         metric_value, target_value, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rec.rec_type,
                        rec.priority.value,
                        rec.category,
                        rec.resource_type,
                        rec.message,
                        rec.action,
                        rec.metric_value,
                        rec.target_value,
                        to_db_time(rec.created_at),
                    ),
                )
        return len(recommendations)

    def latest(self, limit: int = 10) -> list[Recommendation]:
        rows = self.db.fetch_all(
            "SELECT * FROM recommendations ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [
            Recommendation(
                rec_type=row["rec_type"],
                priority=RecommendationPriority(row["priority"]),
                message=row["message"],
                action=row["action"],
                category=row["category"],
                resource_type=row["resource_type"],
                metric_value=row["metric_value"],
                target_value=row["target_value"],
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
