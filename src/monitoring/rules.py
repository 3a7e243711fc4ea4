"""
Alert rules for coordinator monitoring.

Rules define threshold conditions over rolling metrics and pool state.
Each rule returns every alert it raises for the current context; an
empty list means the condition is clear.
"""
import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..resources.pools import PoolSnapshot, PoolStatus
from .alerts import Alert, AlertSeverity
from .metrics import ALL_CATEGORIES, MetricsByCategory, WindowMetrics


@dataclass
class MetricContext:
    """
    Context passed to rules for evaluation.

    Attributes:
        now: Evaluation time
        metrics: Rolling metrics keyed ``category -> window label``
        snapshot: Pool state read during the tick (optional)
        tick_fault: Diagnostic payload when the tick aborted (optional)
    """
    now: datetime
    metrics: MetricsByCategory = field(default_factory=dict)
    snapshot: Optional[PoolSnapshot] = None
    tick_fault: Optional[Dict[str, Any]] = None

    def windows(self, label: str, include_total: bool = False) -> List[WindowMetrics]:
        return [
            by_window[label]
            for category, by_window in sorted(self.metrics.items())
            if label in by_window and (include_total or category != ALL_CATEGORIES)
        ]

    def total(self, label: str) -> Optional[WindowMetrics]:
        return self.metrics.get(ALL_CATEGORIES, {}).get(label)


class AlertRule(abc.ABC):
    """Abstract base class for alert rules."""

    def __init__(self, name: str, severity: AlertSeverity):
        """
        Initialize the rule.

        Args:
            name: Unique name for this rule, used as the alert type
            severity: Default severity for alerts from this rule
        """
        self.name = name
        self.severity = severity

    @abc.abstractmethod
    def evaluate(self, context: MetricContext) -> List[Alert]:
        """
        Evaluate the rule against the given context.

        Args:
            context: The metric context to evaluate

        Returns:
            Alerts raised; empty when the condition is clear
        """

    def _alert(self, context: MetricContext, severity: AlertSeverity, message: str, **kwargs) -> Alert:
        return Alert(
            alert_type=self.name,
            severity=severity,
            message=message,
            timestamp=context.now,
            **kwargs,
        )


class LowSuccessRate(AlertRule):
    """Alerts when a category's success rate drops below its thresholds."""

    def __init__(
        self,
        warning: float = 0.95,
        critical: float = 0.90,
        window: str = "1h",
        min_samples: int = 3,
    ):
        super().__init__("LowSuccessRate", AlertSeverity.WARNING)
        self.warning = warning
        self.critical = critical
        self.window = window
        self.min_samples = min_samples

    def evaluate(self, context: MetricContext) -> List[Alert]:
        alerts = []
        for metrics in context.windows(self.window):
            rate = metrics.success_rate
            if rate is None or metrics.terminal < self.min_samples or rate >= self.warning:
                continue
            severity = AlertSeverity.CRITICAL if rate < self.critical else self.severity
            threshold = self.critical if severity is AlertSeverity.CRITICAL else self.warning
            alerts.append(self._alert(
                context,
                severity,
                f"{metrics.category} success rate {rate:.1%} over {self.window} "
                f"(threshold {threshold:.0%})",
                category=metrics.category,
                metric_value=rate,
                threshold=threshold,
                metadata={"window": self.window, "executions": metrics.terminal},
            ))
        return alerts


class HighErrorCount(AlertRule):
    """Alerts when a category accumulates failed or timed-out executions."""

    def __init__(self, warning: int = 3, critical: int = 5, window: str = "1h"):
        super().__init__("HighErrorCount", AlertSeverity.WARNING)
        self.warning = warning
        self.critical = critical
        self.window = window

    def evaluate(self, context: MetricContext) -> List[Alert]:
        alerts = []
        for metrics in context.windows(self.window):
            errors = metrics.error_count
            if errors < self.warning:
                continue
            severity = AlertSeverity.CRITICAL if errors >= self.critical else self.severity
            alerts.append(self._alert(
                context,
                severity,
                f"{metrics.category} had {errors} failed executions in {self.window}",
                category=metrics.category,
                metric_value=float(errors),
                threshold=float(self.critical if severity is AlertSeverity.CRITICAL else self.warning),
                metadata={"failed": metrics.failed, "timed_out": metrics.timed_out},
            ))
        return alerts


class SlowExecution(AlertRule):
    """Alerts when mean execution duration exceeds a threshold."""

    def __init__(self, threshold_ms: float = 300_000, window: str = "1h"):
        super().__init__("SlowExecution", AlertSeverity.WARNING)
        self.threshold_ms = threshold_ms
        self.window = window

    def evaluate(self, context: MetricContext) -> List[Alert]:
        alerts = []
        for metrics in context.windows(self.window):
            mean = metrics.mean_duration_ms
            if mean is None or mean <= self.threshold_ms:
                continue
            alerts.append(self._alert(
                context,
                self.severity,
                f"{metrics.category} mean duration {mean / 1000:.0f}s over {self.window}",
                category=metrics.category,
                metric_value=mean,
                threshold=self.threshold_ms,
            ))
        return alerts


class CostSpike(AlertRule):
    """Alerts when system-wide spend in the last hour exceeds a threshold."""

    def __init__(self, warning: float = 25.0, critical: float = 50.0, window: str = "1h"):
        super().__init__("CostSpike", AlertSeverity.WARNING)
        self.warning = warning
        self.critical = critical
        self.window = window

    def evaluate(self, context: MetricContext) -> List[Alert]:
        total = context.total(self.window)
        if total is None or total.cost < self.warning:
            return []
        severity = AlertSeverity.CRITICAL if total.cost >= self.critical else self.severity
        threshold = self.critical if severity is AlertSeverity.CRITICAL else self.warning
        return [self._alert(
            context,
            severity,
            f"Spend {total.cost:.2f} in {self.window} exceeds {threshold:.2f}",
            metric_value=total.cost,
            threshold=threshold,
        )]


class PoolUtilization(AlertRule):
    """Alerts when a resource pool leaves the healthy state."""

    _SEVERITY = {
        PoolStatus.WARNING: AlertSeverity.WARNING,
        PoolStatus.CRITICAL: AlertSeverity.CRITICAL,
        PoolStatus.UNAVAILABLE: AlertSeverity.CRITICAL,
    }

    def __init__(self):
        super().__init__("PoolUtilization", AlertSeverity.WARNING)

    def evaluate(self, context: MetricContext) -> List[Alert]:
        if context.snapshot is None:
            return []
        alerts = []
        for name, pool in sorted(context.snapshot.pools.items()):
            status = context.snapshot.statuses[name]
            if status is PoolStatus.HEALTHY:
                continue
            threshold = (
                context.snapshot.critical_utilization
                if status is PoolStatus.CRITICAL
                else context.snapshot.warning_utilization
            )
            alerts.append(self._alert(
                context,
                self._SEVERITY[status],
                f"Pool {name} is {status.value} ({pool.utilization:.0%} used)",
                category=name,
                metric_value=pool.utilization,
                threshold=threshold,
                metadata={"status": status.value, "consecutive_errors": pool.consecutive_errors},
            ))
        return alerts


class CoordinatorFault(AlertRule):
    """Alerts when a tick aborted with a system fault."""

    def __init__(self):
        super().__init__("CoordinatorFault", AlertSeverity.CRITICAL)

    def evaluate(self, context: MetricContext) -> List[Alert]:
        if not context.tick_fault:
            return []
        return [self._alert(
            context,
            self.severity,
            f"Coordinator tick faulted: {context.tick_fault.get('message', 'unknown error')}",
            metadata=dict(context.tick_fault),
        )]


def default_rules(settings) -> List[AlertRule]:
    """The standard rule set, thresholds taken from settings."""
    return [
        LowSuccessRate(warning=settings.success_rate_warning, critical=settings.success_rate_critical),
        HighErrorCount(warning=settings.error_count_warning, critical=settings.error_count_critical),
        SlowExecution(threshold_ms=settings.duration_warning_ms),
        CostSpike(warning=settings.hourly_cost_warning, critical=settings.hourly_cost_critical),
        PoolUtilization(),
        CoordinatorFault(),
    ]


__all__ = [
    "AlertRule",
    "MetricContext",
    "LowSuccessRate",
    "HighErrorCount",
    "SlowExecution",
    "CostSpike",
    "PoolUtilization",
    "CoordinatorFault",
    "default_rules",
]
