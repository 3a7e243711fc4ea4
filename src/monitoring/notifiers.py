"""
Notification channels for coordinator alerts.

Notifiers are responsible for delivering alerts to various destinations.
"""
import abc
from typing import Dict, Optional

import httpx
import structlog

from .alerts import Alert, AlertSeverity

logger = structlog.get_logger(__name__)


class BaseNotifier(abc.ABC):
    """Abstract base class for all notifiers."""

    @abc.abstractmethod
    async def notify(self, alert: Alert) -> bool:
        """
        Send notification for an alert.

        Args:
            alert: The alert to notify about

        Returns:
            True if notification was successful, False otherwise
        """


class LogNotifier(BaseNotifier):
    """Writes alerts to the structured log."""

    async def notify(self, alert: Alert) -> bool:
        log = {
            AlertSeverity.CRITICAL: logger.error,
            AlertSeverity.WARNING: logger.warning,
        }.get(alert.severity, logger.info)
        log(
            "alert_raised",
            alert_type=alert.alert_type,
            severity=alert.severity.value,
            category=alert.category,
            message=alert.message,
            metric_value=alert.metric_value,
            threshold=alert.threshold,
        )
        return True


class WebhookNotifier(BaseNotifier):
    """
    Sends alerts to a generic webhook URL.

    Uses HTTP POST with JSON payload.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the webhook notifier.

        Args:
            url: The webhook URL to POST to
            headers: Optional custom headers
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.url = url
        self.headers = headers or {"Content-Type": "application/json"}
        self.timeout = timeout
        self._transport = transport

    async def notify(self, alert: Alert) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.url, json=alert.to_dict(), headers=self.headers)
        except httpx.HTTPError as e:
            logger.error("webhook_notification_failed", url=self.url, error=str(e))
            return False
        if response.status_code >= 400:
            logger.error("webhook_notification_rejected", url=self.url, status=response.status_code)
            return False
        return True


__all__ = ["BaseNotifier", "LogNotifier", "WebhookNotifier"]
