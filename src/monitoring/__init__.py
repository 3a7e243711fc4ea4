"""
Monitoring: rolling metrics, alerting and recommendations.

Usage:
    from src.monitoring import AlertManager, default_rules, LogNotifier

    manager = AlertManager(db, rules=default_rules(settings), notifiers=[LogNotifier()])
    evaluation = await manager.evaluate(MetricContext(now=now, metrics=metrics))
"""
from .alerts import Alert, AlertSeverity, AlertStatus
from .manager import AlertEvaluation, AlertManager
from .metrics import ALL_CATEGORIES, ExecutionStats, MetricsAggregator, MetricWindow, WindowMetrics
from .notifiers import BaseNotifier, LogNotifier, WebhookNotifier
from .recommendations import (
    Recommendation,
    RecommendationEngine,
    RecommendationPriority,
    RecommendationRepository,
    pool_recommendations,
)
from .rules import (
    AlertRule,
    CoordinatorFault,
    CostSpike,
    HighErrorCount,
    LowSuccessRate,
    MetricContext,
    PoolUtilization,
    SlowExecution,
    default_rules,
)

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertStatus",
    "AlertEvaluation",
    "AlertManager",
    "ALL_CATEGORIES",
    "ExecutionStats",
    "MetricsAggregator",
    "MetricWindow",
    "WindowMetrics",
    "BaseNotifier",
    "LogNotifier",
    "WebhookNotifier",
    "Recommendation",
    "RecommendationEngine",
    "RecommendationPriority",
    "RecommendationRepository",
    "pool_recommendations",
    "AlertRule",
    "CoordinatorFault",
    "CostSpike",
    "HighErrorCount",
    "LowSuccessRate",
    "MetricContext",
    "PoolUtilization",
    "SlowExecution",
    "default_rules",
]
