"""
Core alert data structures for coordinator monitoring.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..core.store import from_db_time, from_json


class AlertSeverity(Enum):
    """Severity levels for alerts."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"info": 0, "warning": 1, "critical": 2}[self.value]


class AlertStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass
class Alert:
    """
    A threshold breach reported to operators.

    Attributes:
        alert_type: Name of the rule that raised the alert
        severity: The severity level of the alert
        message: Human-readable alert message
        category: Work category or pool the alert is about (None: system-wide)
        metric_value: Observed value that breached the threshold
        threshold: The threshold it breached
        timestamp: When the alert was generated
        metadata: Additional context data
    """
    alert_type: str
    severity: AlertSeverity
    message: str
    category: Optional[str] = None
    metric_value: Optional[float] = None
    threshold: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: AlertStatus = AlertStatus.OPEN
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> tuple[str, Optional[str]]:
        """Open alerts with the same key are one alert."""
        return (self.alert_type, self.category)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the alert to a dictionary."""
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type,
            "severity": self.severity.value,
            "message": self.message,
            "category": self.category,
            "metric_value": self.metric_value,
            "threshold": self.threshold,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        """Deserialize an alert from a dictionary."""
        return cls(
            alert_id=data.get("alert_id") or str(uuid.uuid4()),
            alert_type=data["alert_type"],
            severity=AlertSeverity(data["severity"]),
            message=data["message"],
            category=data.get("category"),
            metric_value=data.get("metric_value"),
            threshold=data.get("threshold"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.now(),
            status=AlertStatus(data.get("status", "open")),
            resolved_at=datetime.fromisoformat(data["resolved_at"]) if data.get("resolved_at") else None,
            metadata=data.get("metadata", {}),
        )

    @classmethod
    def from_row(cls, row) -> "Alert":
        return cls(
            alert_id=row["alert_id"],
            alert_type=row["alert_type"],
            severity=AlertSeverity(row["severity"]),
            message=row["message"],
            category=row["category"],
            metric_value=row["metric_value"],
            threshold=row["threshold"],
            timestamp=from_db_time(row["created_at"]),
            status=AlertStatus(row["status"]),
            resolved_at=from_db_time(row["resolved_at"]),
            metadata=from_json(row["metadata"]),
        )


__all__ = ["Alert", "AlertSeverity", "AlertStatus"]
