"""
Alert Manager for coordinating rules, persistence and notifiers.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from ..core.error_log import ErrorLogRepository
from ..core.errors import ErrorKind
from ..core.store import Database, from_json, to_db_time, to_json
from .alerts import Alert, AlertStatus
from .notifiers import BaseNotifier
from .rules import AlertRule, MetricContext

logger = structlog.get_logger(__name__)


@dataclass
class AlertEvaluation:
    """Outcome of one evaluation round."""
    raised: List[Alert] = field(default_factory=list)
    deduplicated: List[Alert] = field(default_factory=list)
    resolved: List[Alert] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raised": [a.to_dict() for a in self.raised],
            "deduplicated": len(self.deduplicated),
            "resolved": [a.alert_id for a in self.resolved],
        }


class AlertManager:
    """
    Evaluates rules, stores alerts and distributes new ones to notifiers.

    An alert whose (type, category) matches a currently open alert is
    folded into that alert instead of opening a duplicate. Open alerts
    whose rule ran and no longer fires are resolved.
    """

    def __init__(
        self,
        db: Database,
        rules: Optional[List[AlertRule]] = None,
        notifiers: Optional[List[BaseNotifier]] = None,
        error_log: Optional[ErrorLogRepository] = None,
    ):
        """
        Initialize the alert manager.

        Args:
            db: Database holding the alerts table
            rules: Initial list of alert rules
            notifiers: Initial list of notifiers
            error_log: Where notification failures are recorded
        """
        self.db = db
        self.rules: List[AlertRule] = rules or []
        self.notifiers: List[BaseNotifier] = notifiers or []
        self.error_log = error_log or ErrorLogRepository(db)
        self._stats = {
            "alerts_generated": 0,
            "alerts_deduplicated": 0,
            "alerts_resolved": 0,
            "notifications_sent": 0,
            "notification_failures": 0,
        }

    def add_rule(self, rule: AlertRule) -> None:
        """Add an alert rule."""
        self.rules.append(rule)
        logger.debug("alert_rule_added", rule=rule.name)

    def remove_rule(self, rule_name: str) -> bool:
        """Remove an alert rule by name."""
        for i, rule in enumerate(self.rules):
            if rule.name == rule_name:
                self.rules.pop(i)
                logger.debug("alert_rule_removed", rule=rule_name)
                return True
        return False

    def add_notifier(self, notifier: BaseNotifier) -> None:
        """Add a notifier."""
        self.notifiers.append(notifier)
        logger.debug("notifier_added", notifier=notifier.__class__.__name__)

    async def evaluate(self, context: MetricContext) -> AlertEvaluation:
        """
        Evaluate every rule, persist results and notify on new alerts.

        A rule that raises is logged and skipped; it neither fires nor
        resolves anything this round.
        """
        evaluation = AlertEvaluation()
        evaluated_types = set()
        firing_keys = set()

        for rule in self.rules:
            try:
                alerts = rule.evaluate(context)
            except Exception as e:
                logger.error("alert_rule_failed", rule=rule.name, error=str(e))
                self.error_log.record(
                    ErrorKind.SYSTEM_FAULT,
                    f"Alert rule {rule.name} failed: {e}",
                    context={"rule": rule.name},
                    now=context.now,
                )
                continue
            evaluated_types.add(rule.name)
            for alert in alerts:
                firing_keys.add(alert.dedupe_key)
                stored = self.raise_alert(alert)
                if stored is None:
                    evaluation.deduplicated.append(alert)
                else:
                    evaluation.raised.append(stored)

        for alert in self.open_alerts():
            if alert.alert_type in evaluated_types and alert.dedupe_key not in firing_keys:
                evaluation.resolved.append(self.resolve(alert.alert_id, context.now))

        if evaluation.raised and self.notifiers:
            await self._notify_all(evaluation.raised, context.now)
        return evaluation

    def raise_alert(self, alert: Alert) -> Optional[Alert]:
        """
        Store an alert unless an open alert with the same key exists.

        Returns:
            The stored alert, or None when it was folded into an open one.
        """
        with self.db.transaction() as conn:
            existing = conn.execute(
                """
                SELECT * FROM alerts
                WHERE status = 'open' AND alert_type = ? AND category IS ?
                """,
                alert.dedupe_key,
            ).fetchone()
            if existing is not None:
                metadata = from_json(existing["metadata"])
                metadata["occurrences"] = metadata.get("occurrences", 1) + 1
                metadata["last_seen"] = alert.timestamp.isoformat()
                severity = max(
                    (Alert.from_row(existing).severity, alert.severity), key=lambda s: s.rank
                )
                conn.execute(
                    """
                    UPDATE alerts SET metric_value = ?, severity = ?, message = ?, metadata = ?
                    WHERE alert_id = ?
                    """,
                    (alert.metric_value, severity.value, alert.message, to_json(metadata), existing["alert_id"]),
                )
                self._stats["alerts_deduplicated"] += 1
                return None

            conn.execute(
                """
                INSERT INTO alerts
                    (alert_id, alert_type, category, severity, message, metric_value,
                     threshold, status, created_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'open', ?, ?)
                """,
                (
                    alert.alert_id,
                    alert.alert_type,
                    alert.category,
                    alert.severity.value,
                    alert.message,
                    alert.metric_value,
                    alert.threshold,
                    to_db_time(alert.timestamp),
                    to_json({**alert.metadata, "occurrences": 1}),
                ),
            )
        self._stats["alerts_generated"] += 1
        return alert

    def resolve(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        now = now or datetime.now()
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                UPDATE alerts SET status = 'resolved', resolved_at = ?
                WHERE alert_id = ?
                RETURNING *
                """,
                (to_db_time(now), alert_id),
            ).fetchone()
        self._stats["alerts_resolved"] += 1
        logger.info("alert_resolved", alert_id=alert_id, alert_type=row["alert_type"], category=row["category"])
        return Alert.from_row(row)

    async def _notify_all(self, alerts: List[Alert], now: datetime) -> None:
        """Deliver alerts to every notifier; failures are counted, never raised."""
        deliveries = [(notifier, alert) for alert in alerts for notifier in self.notifiers]
        results = await asyncio.gather(
            *(notifier.notify(alert) for notifier, alert in deliveries),
            return_exceptions=True,
        )
        for (notifier, alert), result in zip(deliveries, results):
            if result is True:
                self._stats["notifications_sent"] += 1
                continue
            self._stats["notification_failures"] += 1
            error = str(result) if isinstance(result, Exception) else "notifier returned failure"
            logger.error("notification_failed", notifier=notifier.__class__.__name__, error=error)
            self.error_log.record(
                ErrorKind.TRANSIENT_EXECUTION_FAILURE,
                f"Alert delivery failed: {error}",
                context={"notifier": notifier.__class__.__name__, "alert_id": alert.alert_id},
                now=now,
            )

    def open_alerts(self, severity: Optional[str] = None) -> List[Alert]:
        """Get currently open alerts, newest first."""
        rows = self.db.fetch_all(
            "SELECT * FROM alerts WHERE status = ? ORDER BY created_at DESC",
            (AlertStatus.OPEN.value,),
        )
        alerts = [Alert.from_row(row) for row in rows]
        if severity:
            alerts = [a for a in alerts if a.severity.value == severity.lower()]
        return alerts

    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        rows = self.db.fetch_all(
            "SELECT * FROM alerts ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [Alert.from_row(row) for row in rows]

    def get_stats(self) -> Dict[str, Any]:
        """Get alert manager statistics."""
        return {
            **self._stats,
            "open_alerts": len(self.open_alerts()),
            "rules_count": len(self.rules),
            "notifiers_count": len(self.notifiers),
        }


__all__ = ["AlertManager", "AlertEvaluation"]
