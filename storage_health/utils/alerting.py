"""
Operator alerting for connection health and upload delivery.

Alerts are aimed at the people running the service, not at end users (who
get notifications through the notification dispatcher). They are emitted as
structured WARNING log entries prefixed with ``ALERT:`` so log-based
monitoring can route them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from cachetools import TTLCache

logger = structlog.get_logger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels for production monitoring."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    """Alert categories for organizing alerts by system component."""

    TOKEN_REFRESH = "token_refresh"
    CONNECTION_HEALTH = "connection_health"
    NOTIFICATIONS = "notifications"
    UPLOADS = "uploads"


class Alert:
    """Structured alert with severity, category, and contextual information."""

    def __init__(
        self,
        title: str,
        description: str,
        severity: AlertSeverity,
        category: AlertCategory,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        self.title = title
        self.description = description
        self.severity = severity
        self.category = category
        self.metadata = metadata or {}
        self.user_id = user_id
        self.provider = provider
        self.timestamp = datetime.now(timezone.utc)
        self.alert_id = (
            f"{category.value}_{severity.value}_{int(self.timestamp.timestamp())}"
        )

    @property
    def rate_limit_key(self) -> str:
        return f"{self.category.value}:{self.user_id}:{self.provider}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "user_id": self.user_id,
            "provider": self.provider,
        }


class AlertManager:
    """
    Emits operator alerts with per-connection rate limiting.

    Non-critical alerts for the same (category, user, provider) are capped at
    ``max_alerts_per_window`` within ``window_seconds``; critical alerts are
    always emitted.
    """

    def __init__(self, max_alerts_per_window: int = 3, window_seconds: int = 3600):
        self.max_alerts_per_window = max_alerts_per_window
        self._alert_counts: TTLCache = TTLCache(maxsize=10000, ttl=window_seconds)
        self.sent_count = 0
        self.suppressed_count = 0

    def should_alert(self, alert: Alert) -> bool:
        if alert.severity == AlertSeverity.CRITICAL:
            return True
        return self._alert_counts.get(alert.rate_limit_key, 0) < self.max_alerts_per_window

    def send_alert(self, alert: Alert) -> bool:
        """
        Emit an alert unless it is rate limited.

        Returns:
            True if the alert was emitted
        """
        if not self.should_alert(alert):
            self.suppressed_count += 1
            logger.debug(
                "Alert suppressed due to rate limiting",
                alert_id=alert.alert_id,
                category=alert.category.value,
                severity=alert.severity.value,
            )
            return False

        logger.bind(
            alert_id=alert.alert_id,
            alert_severity=alert.severity.value,
            alert_category=alert.category.value,
            user_id=alert.user_id,
            provider=alert.provider,
        ).warning(
            f"ALERT: {alert.title}",
            description=alert.description,
            metadata=alert.metadata,
        )

        self._alert_counts[alert.rate_limit_key] = (
            self._alert_counts.get(alert.rate_limit_key, 0) + 1
        )
        self.sent_count += 1
        return True

    def alert_token_refresh_failure(
        self,
        user_id: str,
        provider: str,
        failure_count: int,
        error_message: str,
        is_terminal: bool = False,
    ) -> bool:
        """Alert on a failed provider token refresh."""
        if is_terminal or failure_count >= 5:
            severity = AlertSeverity.HIGH
        elif failure_count >= 3:
            severity = AlertSeverity.MEDIUM
        else:
            severity = AlertSeverity.LOW

        alert = Alert(
            title=f"Token Refresh Failure (x{failure_count})",
            description=(
                f"Token refresh for {provider} failed {failure_count} consecutive times "
                f"for user {user_id}. Error: {error_message}. "
                f"{'User must reconnect.' if is_terminal else 'Automatic retry will continue.'}"
            ),
            severity=severity,
            category=AlertCategory.TOKEN_REFRESH,
            metadata={
                "failure_count": failure_count,
                "error_message": error_message,
                "is_terminal": is_terminal,
            },
            user_id=user_id,
            provider=provider,
        )
        return self.send_alert(alert)

    def alert_connection_unhealthy(
        self,
        user_id: str,
        provider: str,
        consecutive_failures: int,
        error_type: Optional[str],
        requires_reconnection: bool,
    ) -> bool:
        """Alert when a connection crosses the escalation threshold."""
        alert = Alert(
            title=f"Storage Connection Unhealthy ({provider})",
            description=(
                f"{consecutive_failures} consecutive failures for user {user_id}. "
                f"Last error: {error_type or 'unknown'}."
            ),
            severity=AlertSeverity.HIGH if requires_reconnection else AlertSeverity.MEDIUM,
            category=AlertCategory.CONNECTION_HEALTH,
            metadata={
                "consecutive_failures": consecutive_failures,
                "error_type": error_type,
                "requires_reconnection": requires_reconnection,
            },
            user_id=user_id,
            provider=provider,
        )
        return self.send_alert(alert)

    def alert_notification_delivery_failure(
        self,
        user_id: str,
        provider: str,
        event: str,
        failure_count: int,
        error_message: str,
    ) -> bool:
        """Alert when notifications for a user repeatedly fail to deliver."""
        alert = Alert(
            title="User Notification Delivery Failing",
            description=(
                f"Notification '{event}' for user {user_id} could not be delivered "
                f"({failure_count} consecutive failures). Error: {error_message}"
            ),
            severity=AlertSeverity.HIGH,
            category=AlertCategory.NOTIFICATIONS,
            metadata={
                "event": event,
                "failure_count": failure_count,
                "error_message": error_message,
            },
            user_id=user_id,
            provider=provider,
        )
        return self.send_alert(alert)

    def alert_upload_timeout(
        self, task_id: str, user_id: str, provider: str, timeout_seconds: int
    ) -> bool:
        """Alert when an upload attempt exceeds its execution time limit."""
        alert = Alert(
            title="Upload Attempt Timed Out",
            description=(
                f"Upload task {task_id} did not finish within {timeout_seconds}s "
                "and was handled as a network error."
            ),
            severity=AlertSeverity.LOW,
            category=AlertCategory.UPLOADS,
            metadata={"task_id": task_id, "timeout_seconds": timeout_seconds},
            user_id=user_id,
            provider=provider,
        )
        return self.send_alert(alert)


_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get the global alert manager instance."""
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def reset_alert_manager() -> None:
    """Reset alert manager (useful for testing)."""
    global _alert_manager
    _alert_manager = None
