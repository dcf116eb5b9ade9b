"""
Upload attempt orchestration.

``UploadOrchestrator.process`` runs one attempt of one UploadTask:
pre-flight validation, token precondition, the provider upload call, then
classification and bookkeeping. It never raises provider/network errors to
the queue; instead it returns a typed decision:

- ``Completed(file_id)`` - the file reached the provider
- ``Requeue(delay_seconds, reason)`` - retryable failure, try again later
- ``Terminal(reason)`` - stop; the task waits for user action or the
  reconnection sweep
"""

import asyncio
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, NamedTuple, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import UploadTask, UploadTasksRepository, utcnow
from ..providers.google_drive import ProviderError, StorageProvider, get_provider
from ..utils.alerting import get_alert_manager
from .error_classifier import (
    ErrorKind,
    policy_for,
    preflight_check,
    recommended_actions,
    render_user_message,
    retry_delay,
    should_retry,
)
from .health_service import HealthService, HealthUpdate, get_health_service
from .notification_dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    get_notification_dispatcher,
)
from .token_manager import TokenManager, get_token_manager

logger = structlog.get_logger(__name__)


class Requeue(NamedTuple):
    delay_seconds: int
    reason: str


class Terminal(NamedTuple):
    reason: str


class Completed(NamedTuple):
    file_id: str


RetryDecision = Union[Requeue, Terminal, Completed]


class UploadOrchestrator:
    """Performs upload attempts and turns their outcome into retry decisions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_manager: Optional[TokenManager] = None,
        health_service: Optional[HealthService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        providers: Optional[Mapping[str, StorageProvider]] = None,
    ):
        self.settings = settings or get_settings()
        self.token_manager = token_manager or get_token_manager()
        self.health = health_service or get_health_service()
        self.dispatcher = dispatcher or get_notification_dispatcher()
        self._providers = providers

    def provider(self, provider_id: str) -> StorageProvider:
        if self._providers is not None:
            return self._providers[provider_id]
        return get_provider(provider_id)

    async def process(self, db: AsyncSession, task_id: uuid.UUID) -> RetryDecision:
        """Run one attempt for a task."""
        task = await UploadTasksRepository(db).get_task(task_id)
        if task is None:
            logger.warning("Upload task not found", task_id=str(task_id))
            return Terminal("task_not_found")
        if task.is_completed:
            return Completed(task.provider_file_id)

        task.attempts += 1
        task.last_processed_at = utcnow()
        await db.commit()

        preflight = await self._preflight(task)
        if preflight is not None:
            kind, message = preflight
            return await self._reject(db, task, kind, message)

        provider = self.provider(task.provider)

        token = await self.token_manager.ensure_valid_token(db, task.user_id, task.provider)
        if not token.ok:
            if token.classification == "transient":
                return await self._handle_failure(
                    db, task, ErrorKind.NETWORK_ERROR, token.error or "Token refresh failed"
                )
            return await self._handle_failure(
                db, task, ErrorKind.TOKEN_EXPIRED, token.error or "Reconnection required"
            )

        try:
            file_id = await provider.upload(
                token.access_token,
                task.local_path,
                task.original_filename,
                mime_type=task.mime_type,
                description=task.description,
            )
        except ProviderError as e:
            kind = provider.classify(e.status_code, e.message)
            return await self._handle_failure(
                db,
                task,
                kind,
                e.message,
                status_code=e.status_code,
                retry_after=e.retry_after,
                provider_message=e.message,
            )
        except OSError as e:
            return await self._handle_failure(
                db, task, provider.classify(None, str(e)), f"{type(e).__name__}: {e}"
            )

        return await self._handle_success(db, task, file_id, token.expires_at)

    async def handle_timeout(self, db: AsyncSession, task_id: uuid.UUID) -> RetryDecision:
        """
        Bookkeeping for an attempt that exceeded the queue's time limit.

        The attempt counter was already advanced when the attempt started.
        """
        task = await UploadTasksRepository(db).get_task(task_id)
        if task is None:
            return Terminal("task_not_found")
        if task.is_completed:
            return Completed(task.provider_file_id)

        timeout = self.settings.upload_task_timeout_seconds
        get_alert_manager().alert_upload_timeout(
            task_id=str(task.id),
            user_id=str(task.user_id),
            provider=task.provider,
            timeout_seconds=timeout,
        )
        return await self._handle_failure(
            db,
            task,
            ErrorKind.NETWORK_ERROR,
            f"Upload exceeded the {timeout}s execution time limit",
        )

    # ===== Pre-flight =====

    async def _preflight(self, task: UploadTask) -> Optional[tuple]:
        kind = preflight_check(task.original_filename, task.size_bytes, self.settings)
        if kind is not None:
            return kind, f"Pre-flight validation failed: {kind.value}"

        exists = await asyncio.to_thread(Path(task.local_path).is_file)
        if not exists:
            return ErrorKind.UNKNOWN, "Source file not found"
        return None

    async def _reject(
        self, db: AsyncSession, task: UploadTask, kind: ErrorKind, message: str
    ) -> RetryDecision:
        """Pre-flight failures say nothing about the connection: task only."""
        provider_name = self.provider(task.provider).display_name
        task.cloud_storage_error_type = kind.value
        task.cloud_storage_error_context = self._error_context(
            task,
            kind,
            provider_name,
            message,
            user_message=render_user_message(
                kind,
                provider_name=provider_name,
                file_name=task.original_filename,
                original_message="The source file could not be found on the server."
                if kind == ErrorKind.UNKNOWN
                else None,
                max_size_bytes=self.settings.upload_max_file_size_bytes,
            ),
        )
        await db.commit()

        logger.warning(
            "Upload rejected before transfer",
            task_id=str(task.id),
            user_id=str(task.user_id),
            provider=task.provider,
            error_kind=kind.value,
            reason=message,
        )
        return Terminal(kind.value)

    # ===== Outcome Bookkeeping =====

    def _error_context(
        self,
        task: UploadTask,
        kind: ErrorKind,
        provider_name: str,
        message: str,
        user_message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ) -> Dict[str, Any]:
        return {
            "user_message": user_message,
            "requires_reconnection": policy_for(kind).requires_reconnection,
            "recommended_actions": recommended_actions(kind, provider_name),
            "technical_details": {
                "message": message,
                "status_code": status_code,
                "retry_after": retry_after,
                "attempt": task.attempts,
                "occurred_at": utcnow().isoformat(),
            },
        }

    async def _handle_failure(
        self,
        db: AsyncSession,
        task: UploadTask,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        provider_message: Optional[str] = None,
    ) -> RetryDecision:
        provider_name = self.provider(task.provider).display_name
        user_message = render_user_message(
            kind,
            provider_name=provider_name,
            file_name=task.original_filename,
            retry_after=retry_after,
            original_message=provider_message if kind == ErrorKind.UNKNOWN else None,
            max_size_bytes=self.settings.upload_max_file_size_bytes,
        )

        task.cloud_storage_error_type = kind.value
        task.cloud_storage_error_context = self._error_context(
            task,
            kind,
            provider_name,
            message,
            user_message,
            status_code=status_code,
            retry_after=retry_after,
        )

        retry = should_retry(kind, task.attempts, self.settings)
        delay = retry_delay(kind, task.attempts, retry_after) if retry else 0
        # Only tasks with a scheduled retry are picked up again after a restart
        task.retry_recommended_at = utcnow() + timedelta(seconds=delay) if retry else None
        await db.commit()

        update = await self.health.record_failure(
            db, task.user_id, task.provider, kind, message
        )
        await self._notify_failure(db, task, update)

        logger.warning(
            "Upload attempt failed",
            task_id=str(task.id),
            user_id=str(task.user_id),
            provider=task.provider,
            error_kind=kind.value,
            status_code=status_code,
            attempt=task.attempts,
            requeue=retry,
            delay_seconds=delay,
        )

        if retry:
            return Requeue(delay_seconds=delay, reason=kind.value)
        return Terminal(kind.value)

    async def _notify_failure(
        self, db: AsyncSession, task: UploadTask, update: HealthUpdate
    ) -> None:
        record = update.record
        threshold = self.settings.health_escalation_threshold

        if record.consecutive_failures == threshold:
            get_alert_manager().alert_connection_unhealthy(
                user_id=str(task.user_id),
                provider=task.provider,
                consecutive_failures=record.consecutive_failures,
                error_type=record.last_error_type,
                requires_reconnection=record.requires_reconnection,
            )

        event = (
            NotificationEvent.ESCALATED_FAILURES
            if record.consecutive_failures >= threshold
            else NotificationEvent.SINGLE_FAILURE
        )
        await self._dispatch(db, task, event, update)

    async def _dispatch(
        self,
        db: AsyncSession,
        task: UploadTask,
        event: NotificationEvent,
        update: HealthUpdate,
    ) -> None:
        """Notifications are fire-and-forget for the upload's bookkeeping."""
        try:
            await self.dispatcher.maybe_notify(
                db, task.user_id, task.provider, event, update.record
            )
        except Exception as e:
            logger.error(
                "Notification dispatch failed",
                task_id=str(task.id),
                notification_event=event.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _handle_success(
        self, db: AsyncSession, task: UploadTask, file_id: str, token_expires_at=None
    ) -> RetryDecision:
        task.provider_file_id = file_id
        task.clear_error()
        task.retry_recommended_at = None
        task.completed_at = utcnow()
        await db.commit()

        update = await self.health.record_success(
            db, task.user_id, task.provider, token_expires_at=token_expires_at
        )
        if update.recovered:
            await self._dispatch(db, task, NotificationEvent.CONNECTION_RECOVERED, update)

        logger.info(
            "Upload completed",
            task_id=str(task.id),
            user_id=str(task.user_id),
            provider=task.provider,
            file_id=file_id,
            attempt=task.attempts,
        )
        return Completed(file_id)


_orchestrator: Optional[UploadOrchestrator] = None


def get_upload_orchestrator() -> UploadOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = UploadOrchestrator()
    return _orchestrator


def reset_upload_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
