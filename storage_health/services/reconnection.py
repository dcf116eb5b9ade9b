"""
Connection recovery after a fresh OAuth authorization.

``ConnectionRecoveryService.on_oauth_callback`` exchanges the code, proves
the new token works with an operational probe, resets the health record and
runs the reconnection sweep: every unfinished upload blocked by a kind that
a new authorization fixes goes back to the queue.

``bulk_retry`` is the user's manual override and requeues every blocked
task regardless of kind.
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, Mapping, NamedTuple, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import RepositoryError, UploadTasksRepository, utcnow
from ..providers.google_drive import ProviderError, StorageProvider, get_provider
from .error_classifier import RECONNECTION_FIXABLE
from .health_service import HealthService, HealthUpdate, get_health_service
from .notification_dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    get_notification_dispatcher,
)
from .token_manager import TokenExchangeError, TokenManager, get_token_manager

logger = structlog.get_logger(__name__)


class TaskEnqueuer(Protocol):
    def enqueue(self, task_id: uuid.UUID, delay_seconds: float = 0) -> bool: ...


class CallbackResult(NamedTuple):
    success: bool
    requeued_count: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def message(self) -> str:
        if not self.success:
            return self.error or "Reconnection failed"
        if self.requeued_count == 1:
            return "Connected successfully. 1 pending upload has been queued."
        if self.requeued_count:
            return (
                f"Connected successfully. {self.requeued_count} pending uploads "
                "have been queued."
            )
        return "Connected successfully."

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "requeued_count": self.requeued_count,
                "message": self.message,
            }
        return {"success": False, "error": self.error, "error_code": self.error_code}


class ConnectionRecoveryService:
    """OAuth callback handling and the reconnection sweep."""

    def __init__(
        self,
        queue: TaskEnqueuer,
        settings: Optional[Settings] = None,
        token_manager: Optional[TokenManager] = None,
        health_service: Optional[HealthService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        providers: Optional[Mapping[str, StorageProvider]] = None,
    ):
        self.queue = queue
        self.settings = settings or get_settings()
        self.token_manager = token_manager or get_token_manager()
        self.health = health_service or get_health_service()
        self.dispatcher = dispatcher or get_notification_dispatcher()
        self._providers = providers
        self.cooldown = timedelta(minutes=self.settings.reconnection_cooldown_minutes)

    def provider(self, provider_id: str) -> StorageProvider:
        if self._providers is not None:
            return self._providers[provider_id]
        return get_provider(provider_id)

    async def on_oauth_callback(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str, code: str
    ) -> CallbackResult:
        """
        Complete a (re)connection.

        The sweep runs once and is not retried; if it fails the callback
        reports the error even though the new tokens are already stored.
        """
        try:
            await self.token_manager.exchange_code(db, user_id, provider, code)
        except TokenExchangeError as e:
            return CallbackResult(
                success=False, error=str(e), error_code="OAUTH-EXCHANGE-FAILED"
            )

        token = await self.token_manager.ensure_valid_token(db, user_id, provider)
        if not token.ok:
            return CallbackResult(
                success=False,
                error=token.error or "Stored token is not usable",
                error_code="OAUTH-TOKEN-INVALID",
            )

        provider_impl = self.provider(provider)
        try:
            await provider_impl.probe(token.access_token)
        except ProviderError as e:
            kind = provider_impl.classify(e.status_code, e.message)
            await self.health.record_failure(db, user_id, provider, kind, e.message)
            logger.warning(
                "Post-connect probe failed",
                user_id=str(user_id),
                provider=provider,
                error_kind=kind.value,
                status_code=e.status_code,
            )
            return CallbackResult(
                success=False,
                error=f"Connected, but {provider_impl.display_name} could not be reached",
                error_code="OAUTH-PROBE-FAILED",
            )

        update = await self.health.record_success(
            db, user_id, provider, token_expires_at=token.expires_at
        )
        await self._notify_recovered(db, user_id, provider, update)

        try:
            requeued = await self.sweep(db, user_id, provider)
        except RepositoryError as e:
            logger.error(
                "Reconnection sweep failed",
                user_id=str(user_id),
                provider=provider,
                error=str(e),
            )
            return CallbackResult(
                success=False,
                error="Connected, but pending uploads could not be requeued",
                error_code="STORAGE-SWEEP-FAILED",
            )

        logger.info(
            "Provider reconnected",
            user_id=str(user_id),
            provider=provider,
            requeued_count=requeued,
            recovered=update.recovered,
        )
        return CallbackResult(success=True, requeued_count=requeued)

    async def _notify_recovered(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str, update: HealthUpdate
    ) -> None:
        if not update.recovered:
            return
        try:
            await self.dispatcher.maybe_notify(
                db, user_id, provider, NotificationEvent.CONNECTION_RECOVERED, update.record
            )
        except Exception as e:
            logger.error(
                "Recovery notification failed",
                user_id=str(user_id),
                provider=provider,
                error=str(e),
            )

    async def sweep(self, db: AsyncSession, user_id: uuid.UUID, provider: str) -> int:
        """
        Requeue uploads blocked by reconnection-fixable errors.

        Tasks recommended for retry within the cooldown window are skipped.

        Returns:
            Number of tasks requeued
        """
        repo = UploadTasksRepository(db)
        tasks = await repo.find_blocked_tasks(
            user_id,
            provider,
            error_types=[kind.value for kind in RECONNECTION_FIXABLE],
            retry_before=utcnow() - self.cooldown,
            limit=self.settings.reconnection_sweep_limit,
        )
        return await self._requeue(db, repo, tasks, reset_attempts=False)

    async def bulk_retry(self, db: AsyncSession, user_id: uuid.UUID, provider: str) -> int:
        """Requeue every blocked task for the pair, whatever its error kind."""
        repo = UploadTasksRepository(db)
        tasks = await repo.find_blocked_tasks(user_id, provider)
        count = await self._requeue(db, repo, tasks, reset_attempts=True)
        logger.info(
            "Bulk retry requested", user_id=str(user_id), provider=provider, requeued_count=count
        )
        return count

    async def _requeue(
        self, db: AsyncSession, repo: UploadTasksRepository, tasks, reset_attempts: bool
    ) -> int:
        reset = await repo.reset_for_retry(tasks, reset_attempts=reset_attempts)
        await db.commit()
        # Tasks already queued or running are not counted twice
        return sum(1 for task in reset if self.queue.enqueue(task.id))


_recovery_service: Optional[ConnectionRecoveryService] = None


def get_recovery_service() -> ConnectionRecoveryService:
    global _recovery_service
    if _recovery_service is None:
        from .upload_queue import get_upload_queue

        _recovery_service = ConnectionRecoveryService(get_upload_queue())
    return _recovery_service


def reset_recovery_service() -> None:
    global _recovery_service
    _recovery_service = None
