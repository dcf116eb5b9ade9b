"""
Connection health state for each (user, provider) pair.

The HealthService is the only writer of ``connection_health`` rows. It
upserts the row on first touch, applies failure/success/refresh outcomes
with in-database increments so concurrent workers never lose an update,
and recomputes the raw and consolidated status after every change.

Consolidated status priority:
1. authentication_required - requires_reconnection is set
2. connection_issues - any outstanding failure signal (refresh failure,
   failed probe/upload, consecutive failures)
3. healthy
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import ConnectionHealth, UploadTasksRepository, utcnow
from ..providers.google_drive import provider_display_name
from .error_classifier import ErrorKind, policy_for, render_user_message

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
CONNECTION_ISSUES = "connection_issues"
AUTHENTICATION_REQUIRED = "authentication_required"

STATUS_MESSAGES = {
    HEALTHY: "Connected and working properly",
    CONNECTION_ISSUES: "Connection issues detected - please check your network and try again",
    AUTHENTICATION_REQUIRED: "Authentication required - please reconnect your account",
}


class HealthUpdate(NamedTuple):
    """Health record after a change, with the verdict it replaced."""

    record: ConnectionHealth
    previous_status: str

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.record.consolidated_status

    @property
    def recovered(self) -> bool:
        return self.previous_status != HEALTHY and self.record.consolidated_status == HEALTHY


def compute_consolidated_status(record: ConnectionHealth) -> str:
    if record.requires_reconnection:
        return AUTHENTICATION_REQUIRED
    if (
        record.token_refresh_failures > 0
        or record.consecutive_failures > 0
        or record.operational_test_result == "failed"
    ):
        return CONNECTION_ISSUES
    return HEALTHY


class HealthService:
    """Owns the consolidated connection-health record per (user, provider)."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def raw_status(self, consecutive_failures: int) -> str:
        if consecutive_failures >= self.settings.health_escalation_threshold:
            return "unhealthy"
        if consecutive_failures >= self.settings.health_degraded_threshold:
            return "degraded"
        return "healthy"

    # ===== Reads =====

    async def get_record(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str, for_update: bool = False
    ) -> Optional[ConnectionHealth]:
        stmt = (
            select(ConnectionHealth)
            .where(ConnectionHealth.user_id == user_id)
            .where(ConnectionHealth.provider == provider)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str
    ) -> ConnectionHealth:
        """
        Upsert the record for (user, provider) and return it.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first touches
        never produce a second row.
        """
        dialect = db.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = (
                insert(ConnectionHealth)
                .values(user_id=user_id, provider=provider)
                .on_conflict_do_nothing(index_elements=["user_id", "provider"])
            )
            await db.execute(stmt)
            record = await self.get_record(db, user_id, provider)
        else:
            record = await self.get_record(db, user_id, provider)
            if record is None:
                record = ConnectionHealth(user_id=user_id, provider=provider)
                db.add(record)
                await db.flush()

        return record

    # ===== Writes =====

    async def _apply(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        values: Dict[str, Any],
    ) -> HealthUpdate:
        """Apply column updates, then recompute both statuses under a row lock."""
        previous = (await self.get_or_create(db, user_id, provider)).consolidated_status

        await db.execute(
            update(ConnectionHealth)
            .where(ConnectionHealth.user_id == user_id)
            .where(ConnectionHealth.provider == provider)
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        record = await self.get_record(db, user_id, provider, for_update=True)
        record.status = self.raw_status(record.consecutive_failures)
        record.consolidated_status = compute_consolidated_status(record)
        await db.commit()

        if record.consolidated_status != previous:
            logger.info(
                "Connection health status changed",
                user_id=str(user_id),
                provider=provider,
                previous_status=previous,
                consolidated_status=record.consolidated_status,
                consecutive_failures=record.consecutive_failures,
            )

        return HealthUpdate(record=record, previous_status=previous)

    async def record_success(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        token_expires_at: Optional[datetime] = None,
    ) -> HealthUpdate:
        """Fully successful operation: reset every failure signal."""
        values: Dict[str, Any] = {
            "consecutive_failures": 0,
            "token_refresh_failures": 0,
            "requires_reconnection": False,
            "last_error_type": None,
            "last_error_message": None,
            "last_successful_operation_at": utcnow(),
            "operational_test_result": "success",
        }
        if token_expires_at is not None:
            values["token_expires_at"] = token_expires_at
        return await self._apply(db, user_id, provider, values)

    async def record_failure(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        kind: ErrorKind,
        message: Optional[str],
    ) -> HealthUpdate:
        """
        Classified probe/upload failure.

        consecutive_failures is incremented exactly once per call and is not
        reset between different ErrorKinds.
        """
        kind = ErrorKind(kind)
        update_result = await self._apply(
            db,
            user_id,
            provider,
            {
                "consecutive_failures": ConnectionHealth.consecutive_failures + 1,
                "last_error_type": kind.value,
                "last_error_message": (message or "")[:2000] or None,
                "requires_reconnection": policy_for(kind).requires_reconnection,
                "operational_test_result": "failed",
            },
        )
        logger.warning(
            "Connection failure recorded",
            user_id=str(user_id),
            provider=provider,
            error_kind=kind.value,
            consecutive_failures=update_result.record.consecutive_failures,
            consolidated_status=update_result.record.consolidated_status,
        )
        return update_result

    async def record_token_refresh_success(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        expires_at: Optional[datetime],
    ) -> HealthUpdate:
        return await self._apply(
            db,
            user_id,
            provider,
            {
                "last_token_refresh_attempt_at": utcnow(),
                "token_refresh_failures": 0,
                "token_expires_at": expires_at,
            },
        )

    async def record_token_refresh_failure(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        permanent: bool,
        message: str,
    ) -> HealthUpdate:
        """
        Failed refresh. A permanent failure (revoked grant) requires the user
        to reconnect; a transient one only degrades the connection.
        """
        values: Dict[str, Any] = {
            "last_token_refresh_attempt_at": utcnow(),
            "token_refresh_failures": ConnectionHealth.token_refresh_failures + 1,
            "last_error_message": message[:2000],
        }
        if permanent:
            values["requires_reconnection"] = True
            values["last_error_type"] = ErrorKind.TOKEN_EXPIRED.value
        return await self._apply(db, user_id, provider, values)

    # ===== Snapshots =====

    async def get_health_snapshot(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str
    ) -> Dict[str, Any]:
        """
        Read-only health view for dashboards.

        Pairs that were never touched report a default healthy state without
        creating a row.
        """
        record = await self.get_record(db, user_id, provider)
        pending = await UploadTasksRepository(db).count_pending(user_id, provider)

        if record is None:
            return {
                "provider": provider,
                "status": HEALTHY,
                "raw_status": "healthy",
                "consecutive_failures": 0,
                "requires_reconnection": False,
                "last_error_type": None,
                "user_friendly_message": STATUS_MESSAGES[HEALTHY],
                "pending_uploads_count": pending,
                "last_successful_operation_at": None,
                "token_expires_at": None,
                "operational_test_result": None,
            }

        if record.last_error_type and record.consolidated_status != HEALTHY:
            message = render_user_message(
                ErrorKind(record.last_error_type),
                provider_name=provider_display_name(provider),
            )
        else:
            message = STATUS_MESSAGES[record.consolidated_status]

        return {
            "provider": provider,
            "status": record.consolidated_status,
            "raw_status": record.status,
            "consecutive_failures": record.consecutive_failures,
            "requires_reconnection": record.requires_reconnection,
            "last_error_type": record.last_error_type,
            "user_friendly_message": message,
            "pending_uploads_count": pending,
            "last_successful_operation_at": _isoformat(record.last_successful_operation_at),
            "token_expires_at": _isoformat(record.token_expires_at),
            "operational_test_result": record.operational_test_result,
        }

    async def get_all_snapshots(
        self, db: AsyncSession, user_id: uuid.UUID, providers: Iterable[str]
    ) -> List[Dict[str, Any]]:
        return [
            await self.get_health_snapshot(db, user_id, provider) for provider in providers
        ]


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


_health_service: Optional[HealthService] = None


def get_health_service() -> HealthService:
    global _health_service
    if _health_service is None:
        _health_service = HealthService()
    return _health_service


def reset_health_service() -> None:
    global _health_service
    _health_service = None
