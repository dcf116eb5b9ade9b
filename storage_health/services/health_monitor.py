"""
Periodic connection health monitor.

Runs as a background task and walks every stored provider token:
- ``ensure_valid_token`` with the proactive refresh lead time, so tokens are
  renewed before uploads find them expired
- an operational probe with the (possibly refreshed) token, fed into the
  connection health record
- a ``proactive_token_expiring`` notification when a token expires within
  the proactive window and cannot renew itself

Each connection is checked with its own session under a concurrency limit,
so one slow or broken connection does not hold up the others.
"""

import asyncio
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Set

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import ProviderTokensRepository, get_session_factory
from ..providers.google_drive import ProviderError, StorageProvider, get_provider
from ..utils.logging import operation_context
from .health_service import HealthService, HealthUpdate, get_health_service
from .notification_dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    get_notification_dispatcher,
)
from .token_manager import TokenManager, get_token_manager

logger = structlog.get_logger(__name__)


class HealthMonitorService:
    """Background service checking and renewing every provider connection."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        token_manager: Optional[TokenManager] = None,
        health_service: Optional[HealthService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        providers: Optional[Mapping[str, StorageProvider]] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.token_manager = token_manager or get_token_manager()
        self.health = health_service or get_health_service()
        self.dispatcher = dispatcher or get_notification_dispatcher()
        self._providers = providers

        # Service state
        self._running = False
        self._background_task: Optional[asyncio.Task] = None
        self._checks_in_progress: Set[str] = set()

        self.check_interval_base = self.settings.health_check_interval_seconds
        self.check_jitter_seconds = self.settings.health_check_jitter_seconds
        self.max_concurrent_checks = 5
        self.refresh_within_seconds = self.settings.proactive_refresh_minutes * 60

        self.stats = {
            "cycles_completed": 0,
            "connections_checked": 0,
            "tokens_refreshed": 0,
            "probes_failed": 0,
            "proactive_notifications": 0,
            "errors_encountered": 0,
            "avg_cycle_duration_ms": 0.0,
            "last_cycle_time": None,
        }

    @property
    def session_factory(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def provider(self, provider_id: str) -> StorageProvider:
        if self._providers is not None:
            return self._providers[provider_id]
        return get_provider(provider_id)

    async def start(self) -> None:
        """Start the background health check loop."""
        if self._running:
            logger.warning("Health monitor already running")
            return

        self._running = True
        self._background_task = asyncio.create_task(self._background_check_loop())

        logger.info(
            "Health monitor started",
            check_interval_base=self.check_interval_base,
            max_concurrent=self.max_concurrent_checks,
        )

    async def stop(self) -> None:
        """Stop the background health check loop."""
        if not self._running:
            return

        self._running = False

        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
            self._background_task = None

        logger.info("Health monitor stopped")

    async def _background_check_loop(self) -> None:
        while self._running:
            try:
                # Jitter prevents every instance from probing at the same moment
                jitter = random.randint(-self.check_jitter_seconds, self.check_jitter_seconds)
                sleep_duration = max(1, self.check_interval_base + jitter)

                for _ in range(sleep_duration):
                    if not self._running:
                        break
                    await asyncio.sleep(1)

                if not self._running:
                    break

                await self.run_check_cycle()

            except Exception as e:
                logger.error(
                    "Health monitor loop error",
                    error=str(e),
                    cycle_count=self.stats["cycles_completed"],
                )
                self.stats["errors_encountered"] += 1
                await asyncio.sleep(30)

    # ===== Check Cycle =====

    async def run_check_cycle(self) -> Dict[str, int]:
        """
        Check every stored connection once.

        Returns:
            Outcome counts for this cycle
        """
        cycle_start = time.time()
        outcomes: Dict[str, int] = {}

        async with self.session_factory() as db:
            tokens = await ProviderTokensRepository(db).list_tokens()
            pairs = [(token.user_id, token.provider) for token in tokens]
            await self.token_manager.cleanup_expired_states(db)

        semaphore = asyncio.Semaphore(self.max_concurrent_checks)
        results = await asyncio.gather(
            *(self._check_with_limit(user_id, provider, semaphore) for user_id, provider in pairs),
            return_exceptions=True,
        )

        for (user_id, provider), result in zip(pairs, results):
            if isinstance(result, Exception):
                self.stats["errors_encountered"] += 1
                logger.error(
                    "Connection health check error",
                    user_id=str(user_id),
                    provider=provider,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                result = "error"
            outcomes[result] = outcomes.get(result, 0) + 1

        self._update_cycle_statistics((time.time() - cycle_start) * 1000, len(pairs), outcomes)
        return outcomes

    async def _check_with_limit(
        self, user_id: uuid.UUID, provider: str, semaphore: asyncio.Semaphore
    ) -> str:
        key = f"{user_id}:{provider}"
        if key in self._checks_in_progress:
            return "skipped"

        async with semaphore:
            self._checks_in_progress.add(key)
            try:
                with operation_context(user_id=str(user_id), provider=provider):
                    async with self.session_factory() as db:
                        return await self.check_connection(db, user_id, provider)
            finally:
                self._checks_in_progress.discard(key)

    async def check_connection(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str
    ) -> str:
        """
        Refresh-if-needed, probe, and raise the proactive expiry notification.

        Returns one of: healthy, probe_failed, refresh_failed, reconnect_required,
        not_connected.
        """
        result = await self.token_manager.ensure_valid_token(
            db, user_id, provider, refresh_within=self.refresh_within_seconds
        )
        if result.classification == "refreshed":
            self.stats["tokens_refreshed"] += 1

        await self._maybe_warn_expiring(db, user_id, provider, result.classification)

        if result.classification == "not_connected":
            return "not_connected"
        if not result.ok:
            return "reconnect_required" if result.requires_reconnection else "refresh_failed"

        provider_impl = self.provider(provider)
        try:
            await provider_impl.probe(result.access_token)
        except ProviderError as e:
            self.stats["probes_failed"] += 1
            kind = provider_impl.classify(e.status_code, e.message)
            await self.health.record_failure(db, user_id, provider, kind, e.message)
            logger.warning(
                "Connection probe failed",
                user_id=str(user_id),
                provider=provider,
                error_kind=kind.value,
                status_code=e.status_code,
            )
            return "probe_failed"

        if result.classification == "transient":
            # Probe works but renewal does not; keep the refresh failure visible
            return "refresh_failed"

        update = await self.health.record_success(
            db, user_id, provider, token_expires_at=result.expires_at
        )
        await self._notify_recovered(db, user_id, provider, update)
        return "healthy"

    async def _maybe_warn_expiring(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str, classification: str
    ) -> None:
        record = await ProviderTokensRepository(db).get_token(user_id, provider)
        if record is None or record.expires_at is None:
            return

        now = datetime.now(timezone.utc)
        expiring = record.expires_at > now and record.expires_within(
            self.settings.proactive_expiry_window_seconds, now
        )
        cannot_renew = not record.supports_refresh or classification == "terminal"
        if not (expiring and cannot_renew):
            return

        try:
            sent = await self.dispatcher.maybe_notify(
                db,
                user_id,
                provider,
                NotificationEvent.PROACTIVE_TOKEN_EXPIRING,
                await self.health.get_record(db, user_id, provider),
                expires_at=record.expires_at,
            )
        except Exception as e:
            logger.error(
                "Proactive expiry notification failed",
                user_id=str(user_id),
                provider=provider,
                error=str(e),
            )
            return

        if sent:
            self.stats["proactive_notifications"] += 1

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

    def _update_cycle_statistics(
        self, duration_ms: float, connections_checked: int, outcomes: Dict[str, int]
    ) -> None:
        self.stats["cycles_completed"] += 1
        self.stats["connections_checked"] += connections_checked
        self.stats["last_cycle_time"] = datetime.now(timezone.utc).isoformat()

        current_avg = self.stats["avg_cycle_duration_ms"]
        cycle_count = self.stats["cycles_completed"]
        self.stats["avg_cycle_duration_ms"] = (
            current_avg * (cycle_count - 1) + duration_ms
        ) / cycle_count

        logger.info(
            "Health check cycle completed",
            duration_ms=round(duration_ms, 2),
            connections_checked=connections_checked,
            outcomes=outcomes,
            total_cycles=cycle_count,
        )

    def get_service_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "is_running": self._running,
            "checks_in_progress": len(self._checks_in_progress),
            "refresh_metrics": self.token_manager.refresh_metrics.get_metrics_summary(),
            "config": {
                "check_interval_base": self.check_interval_base,
                "check_jitter_seconds": self.check_jitter_seconds,
                "max_concurrent_checks": self.max_concurrent_checks,
                "refresh_within_seconds": self.refresh_within_seconds,
            },
        }


_health_monitor: Optional[HealthMonitorService] = None


def get_health_monitor() -> HealthMonitorService:
    global _health_monitor
    if _health_monitor is None:
        _health_monitor = HealthMonitorService()
    return _health_monitor


def reset_health_monitor() -> None:
    global _health_monitor
    _health_monitor = None
