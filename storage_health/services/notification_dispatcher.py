"""
User notifications for connection health transitions.

The dispatcher decides whether a notification should go out for a health
event, renders it, and hands it to a transport. Repeated notifications for
the same unresolved condition are suppressed by ``NotificationThrottle``, a
TTL map keyed by (user, provider, event) that is cleared when the connection
recovers.

Delivery failures never propagate to callers: they are logged and counted,
and repeated failures for a user raise an operator alert.
"""

import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
import structlog
from cachetools import TTLCache
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings, get_settings
from ..db import ConnectionHealth, User
from ..providers.google_drive import provider_display_name
from ..utils.alerting import AlertManager, get_alert_manager
from .error_classifier import (
    ErrorKind,
    recommended_actions,
    render_user_message,
    requires_reconnection,
)

logger = structlog.get_logger(__name__)


class NotificationEvent(str, Enum):
    SINGLE_FAILURE = "single_failure"
    ESCALATED_FAILURES = "escalated_failures"
    PROACTIVE_TOKEN_EXPIRING = "proactive_token_expiring"
    CONNECTION_RECOVERED = "connection_recovered"


class NotificationDeliveryError(Exception):
    """Raised by transports when a notification cannot be delivered."""

    pass


@dataclass
class Notification:
    """Rendered user notification."""

    user_id: str
    provider: str
    event: NotificationEvent
    recipient: Optional[str]
    subject: str
    greeting: str
    body: str
    action_label: str
    action_url: str
    recommended_actions: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["event"] = self.event.value
        return payload


class NotificationTransport(Protocol):
    async def send(self, notification: Notification) -> None: ...

    async def aclose(self) -> None: ...


class LogTransport:
    """Writes notifications to the structured log (default transport)."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "User notification",
            user_id=notification.user_id,
            provider=notification.provider,
            notification_event=notification.event.value,
            recipient=notification.recipient,
            subject=notification.subject,
            action_url=notification.action_url,
        )

    async def aclose(self) -> None:
        return None


def _is_retryable_delivery_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class WebhookTransport:
    """
    POSTs the notification JSON to a webhook (mail relay, chat bridge, ...).

    Transport errors and 5xx responses are retried; anything else is a
    delivery failure.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.max_attempts = max_attempts
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=3.0, read=timeout_seconds, write=timeout_seconds, pool=10.0
            ),
            follow_redirects=False,
        )

    async def send(self, notification: Notification) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception(_is_retryable_delivery_error),
                reraise=True,
            ):
                with attempt:
                    response = await self.http_client.post(
                        self.url, json=notification.to_dict()
                    )
                    response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Webhook delivery failed: {e}") from e

    async def aclose(self) -> None:
        await self.http_client.aclose()


class NotificationThrottle:
    """
    Expiring "already notified" facts per (user, provider, event).

    Set when a notification is sent, checked before sending, and cleared
    for the whole (user, provider) pair when its status changes back to
    healthy.
    """

    def __init__(self, ttl_seconds: int, maxsize: int = 10000):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)

    @staticmethod
    def _key(user_id: Any, provider: str, event: NotificationEvent) -> Tuple[str, str, str]:
        return (str(user_id), provider, NotificationEvent(event).value)

    def is_throttled(self, user_id: Any, provider: str, event: NotificationEvent) -> bool:
        return self._key(user_id, provider, event) in self._cache

    def mark_sent(self, user_id: Any, provider: str, event: NotificationEvent) -> None:
        self._cache[self._key(user_id, provider, event)] = True

    def release(self, user_id: Any, provider: str, event: NotificationEvent) -> None:
        self._cache.pop(self._key(user_id, provider, event), None)

    def clear(self, user_id: Any, provider: str) -> int:
        """Drop every event key for the pair; returns how many were removed."""
        keys = [
            key for key in list(self._cache.keys())
            if key[0] == str(user_id) and key[1] == provider
        ]
        for key in keys:
            self._cache.pop(key, None)
        return len(keys)

    def __len__(self) -> int:
        return len(self._cache)


class NotificationDispatcher:
    """Decides, renders and delivers user notifications for health events."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[NotificationTransport] = None,
        throttle: Optional[NotificationThrottle] = None,
        alert_manager: Optional[AlertManager] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport or _default_transport(self.settings)
        self.throttle = throttle or NotificationThrottle(
            ttl_seconds=self.settings.notification_throttle_hours * 3600
        )
        self.alert_manager = alert_manager or get_alert_manager()
        self._delivery_failures: Dict[str, int] = defaultdict(int)
        self.stats = {"sent": 0, "suppressed": 0, "failed": 0}

    async def maybe_notify(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        event: NotificationEvent,
        health: Optional[ConnectionHealth] = None,
        *,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """
        Send a notification unless disabled or throttled.

        Returns:
            True if a notification was delivered
        """
        event = NotificationEvent(event)
        if not self.settings.notifications_enabled:
            return False

        if event == NotificationEvent.CONNECTION_RECOVERED:
            self.throttle.clear(user_id, provider)

        if self.throttle.is_throttled(user_id, provider, event):
            self.stats["suppressed"] += 1
            logger.debug(
                "Notification suppressed by throttle",
                user_id=str(user_id),
                provider=provider,
                notification_event=event.value,
            )
            return False

        # Reserve before the await so concurrent failures cannot both send
        self.throttle.mark_sent(user_id, provider, event)

        try:
            user = await db.get(User, user_id)
            notification = self.build_notification(
                user_id, user, provider, event, health, expires_at=expires_at
            )
        except Exception:
            self.throttle.release(user_id, provider, event)
            raise

        try:
            await self.transport.send(notification)
        except Exception as e:
            self.throttle.release(user_id, provider, event)
            self._record_delivery_failure(notification, e)
            return False

        self._delivery_failures.pop(str(user_id), None)
        self.stats["sent"] += 1
        logger.info(
            "Notification sent",
            user_id=str(user_id),
            provider=provider,
            notification_event=event.value,
            subject=notification.subject,
        )
        return True

    def _record_delivery_failure(self, notification: Notification, error: Exception) -> None:
        self.stats["failed"] += 1
        self._delivery_failures[notification.user_id] += 1
        failures = self._delivery_failures[notification.user_id]

        logger.error(
            "Notification delivery failed",
            user_id=notification.user_id,
            provider=notification.provider,
            notification_event=notification.event.value,
            error=str(error),
            error_type=type(error).__name__,
            consecutive_delivery_failures=failures,
        )

        if failures >= self.settings.notification_max_delivery_failures:
            self.alert_manager.alert_notification_delivery_failure(
                user_id=notification.user_id,
                provider=notification.provider,
                event=notification.event.value,
                failure_count=failures,
                error_message=str(error),
            )

    def delivery_failures(self, user_id: Any) -> int:
        return self._delivery_failures.get(str(user_id), 0)

    # ===== Rendering =====

    def build_notification(
        self,
        user_id: uuid.UUID,
        user: Optional[User],
        provider: str,
        event: NotificationEvent,
        health: Optional[ConnectionHealth] = None,
        *,
        expires_at: Optional[datetime] = None,
    ) -> Notification:
        provider_name = provider_display_name(provider)
        base_url = str(self.settings.app_base_url).rstrip("/")
        reconnect_url = f"{base_url}/oauth/{provider}/connect?user_id={user_id}"
        status_url = f"{base_url}/storage/{user_id}/{provider}/health"

        kind = None
        if health is not None and health.last_error_type:
            kind = ErrorKind(health.last_error_type)

        needs_reconnect = bool(health and health.requires_reconnection) or (
            kind is not None and requires_reconnection(kind)
        )

        if event == NotificationEvent.CONNECTION_RECOVERED:
            subject = f"{provider_name} Connection Restored"
            body = (
                f"Your {provider_name} connection is working again. "
                "Pending uploads will continue automatically."
            )
            actions: List[str] = []
            needs_reconnect = False
        elif event == NotificationEvent.PROACTIVE_TOKEN_EXPIRING:
            subject = f"{provider_name} Connection Expiring Soon"
            when = f" at {expires_at.strftime('%Y-%m-%d %H:%M UTC')}" if expires_at else " soon"
            body = (
                f"Your {provider_name} connection expires{when}. "
                "Reconnect now to keep your uploads flowing without interruption."
            )
            actions = recommended_actions(ErrorKind.TOKEN_EXPIRED, provider_name)
            needs_reconnect = True
        else:
            message = render_user_message(
                kind or ErrorKind.UNKNOWN,
                provider_name=provider_name,
            )
            actions = recommended_actions(kind or ErrorKind.UNKNOWN, provider_name)
            if event == NotificationEvent.ESCALATED_FAILURES:
                failures = health.consecutive_failures if health else 0
                subject = f"{provider_name} Connection Issue - Multiple Upload Failures"
                body = (
                    f"{failures} uploads to {provider_name} have failed in a row. {message}"
                )
            elif needs_reconnect:
                subject = f"{provider_name} Connection Issue - Action Required"
                body = message
            else:
                subject = f"{provider_name} Connection Issue - Uploads Delayed"
                body = message

        if needs_reconnect:
            action_label, action_url = f"Reconnect {provider_name}", reconnect_url
        else:
            action_label, action_url = "View connection status", status_url

        name = user.name if user is not None and user.name else "there"
        return Notification(
            user_id=str(user_id),
            provider=provider,
            event=event,
            recipient=user.email if user is not None else None,
            subject=subject,
            greeting=f"Hello {name},",
            body=body,
            action_label=action_label,
            action_url=action_url,
            recommended_actions=actions,
            error_kind=kind.value if kind else None,
        )

    async def aclose(self) -> None:
        await self.transport.aclose()


def _default_transport(settings: Settings) -> NotificationTransport:
    if settings.notification_webhook_url:
        return WebhookTransport(
            str(settings.notification_webhook_url),
            timeout_seconds=settings.notification_webhook_timeout_seconds,
        )
    return LogTransport()


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def reset_notification_dispatcher() -> None:
    global _dispatcher
    _dispatcher = None
