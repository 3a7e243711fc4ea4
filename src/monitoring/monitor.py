"""
Monitor - the last step of every tick.

Samples pool usage, aggregates rolling metrics, evaluates alert rules
and stores advisory recommendations. Also builds the dashboard summary.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.store import Database
from ..resources.pools import PoolSnapshot, ResourcePoolTracker
from ..work_queue.work_queue import WorkQueue
from .manager import AlertEvaluation, AlertManager
from .metrics import MetricsAggregator, MetricsByCategory
from .recommendations import Recommendation, RecommendationEngine, RecommendationRepository
from .rules import MetricContext

logger = structlog.get_logger(__name__)


@dataclass
class MonitorReport:
    """What one monitoring pass produced."""
    now: datetime
    metrics: MetricsByCategory = field(default_factory=dict)
    snapshot: Optional[PoolSnapshot] = None
    alerts: AlertEvaluation = field(default_factory=AlertEvaluation)
    recommendations: List[Recommendation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "metrics": {
                category: {label: m.to_dict() for label, m in by_window.items()}
                for category, by_window in self.metrics.items()
            },
            "pools": self.snapshot.to_dict() if self.snapshot else None,
            "alerts": self.alerts.to_dict(),
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


class Monitor:
    """Records a tick's effects into metrics, alerts and recommendations."""

    def __init__(
        self,
        db: Database,
        settings: CoordinatorSettings,
        pools: ResourcePoolTracker,
        alert_manager: AlertManager,
        queue: Optional[WorkQueue] = None,
    ):
        self.settings = settings
        self.pools = pools
        self.queue = queue
        self.alert_manager = alert_manager
        self.aggregator = MetricsAggregator(db)
        self.engine = RecommendationEngine(settings)
        self.recommendations = RecommendationRepository(db)

    async def record_tick(
        self,
        now: datetime,
        categories: Iterable[str] = (),
        fault: Optional[Dict[str, Any]] = None,
        extra_recommendations: Iterable[Recommendation] = (),
    ) -> MonitorReport:
        """
        Run one monitoring pass.

        Args:
            now: Tick clock.
            categories: Categories that always appear in the metrics.
            fault: Diagnostic payload when the tick aborted.
            extra_recommendations: Advice produced earlier in the tick.
        """
        categories = list(categories) or [c.category_id for c in self.settings.categories]
        snapshot, metrics = await asyncio.to_thread(self._collect, now, categories)
        evaluation = await self.alert_manager.evaluate(
            MetricContext(now=now, metrics=metrics, snapshot=snapshot, tick_fault=fault)
        )
        recommendations = await asyncio.to_thread(
            self._advise, now, metrics, snapshot, list(extra_recommendations)
        )

        logger.info(
            "tick_monitored",
            alerts_raised=len(evaluation.raised),
            alerts_resolved=len(evaluation.resolved),
            recommendations=len(recommendations),
        )
        return MonitorReport(
            now=now,
            metrics=metrics,
            snapshot=snapshot,
            alerts=evaluation,
            recommendations=recommendations,
        )

    def _collect(self, now: datetime, categories: List[str]):
        snapshot = self.pools.sample_usage(now, metadata={"source": "monitor"})
        return snapshot, self.aggregator.collect(now, categories)

    def _advise(self, now, metrics, snapshot, extra: List[Recommendation]) -> List[Recommendation]:
        generated = self.engine.generate(self.aggregator.execution_stats(now), metrics, snapshot, now)
        # Concrete advice from admission replaces the "running optimally" note
        if extra:
            generated = [r for r in generated if r.rec_type != "optimization"]
        recommendations = extra + generated
        self.recommendations.save(recommendations)
        return recommendations

    def dashboard(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summary for operators: executions, pools, alerts, advice."""
        now = now or datetime.now()
        stats = self.aggregator.execution_stats(now)
        snapshot = self.pools.snapshot(now)
        summary: Dict[str, Any] = {
            "generated_at": now.isoformat(),
            "executions": stats.to_dict(),
            "pools": snapshot.to_dict(),
            "open_alerts": [a.to_dict() for a in self.alert_manager.open_alerts()],
            "recommendations": [r.to_dict() for r in self.recommendations.latest()],
            "alert_stats": self.alert_manager.get_stats(),
        }
        if self.queue is not None:
            summary["queue"] = self.queue.stats(now)
        return summary
