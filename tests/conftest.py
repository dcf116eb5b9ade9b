"""
Shared test fixtures for storage-health-core tests.

Provides an on-disk SQLite database per test (created from the ORM
metadata), a scriptable fake storage provider, a recording notification
transport and fully wired services.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set
from unittest.mock import AsyncMock

import pytest
from cryptography.fernet import Fernet

# Set test environment before importing application modules
os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "INFO",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "FERNET_KEY": Fernet.generate_key().decode(),
        "GOOGLE_CLIENT_ID": "test-client-id.apps.googleusercontent.com",
        "GOOGLE_CLIENT_SECRET": "test-client-secret",
        "HEALTH_MONITOR_ENABLED": "false",
        "NOTIFICATIONS_ENABLED": "true",
    }
)

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from storage_health.config import Settings, reset_settings
from storage_health.db import (
    Base,
    ProviderTokensRepository,
    UploadTask,
    UploadTasksRepository,
    User,
    UsersRepository,
)
from storage_health.providers.google_drive import (
    GOOGLE_DRIVE,
    TokenGrant,
    reset_provider_registry,
)
from storage_health.services.error_classifier import ErrorKind, classify
from storage_health.services.health_monitor import reset_health_monitor
from storage_health.services.health_service import HealthService, reset_health_service
from storage_health.services.notification_dispatcher import (
    Notification,
    NotificationDeliveryError,
    NotificationDispatcher,
    reset_notification_dispatcher,
)
from storage_health.services.reconnection import reset_recovery_service
from storage_health.services.token_manager import TokenManager, reset_token_manager
from storage_health.services.upload_orchestrator import (
    UploadOrchestrator,
    reset_upload_orchestrator,
)
from storage_health.services.upload_queue import reset_upload_queue
from storage_health.utils.alerting import AlertManager, reset_alert_manager
from storage_health.utils.crypto import CryptoService, reset_crypto_service


class FakeProvider:
    """Scriptable StorageProvider; every network method is an AsyncMock."""

    provider_id = GOOGLE_DRIVE
    display_name = "Google Drive"

    def __init__(self):
        self.upload = AsyncMock(return_value="drive-file-1")
        self.refresh = AsyncMock(
            return_value=TokenGrant(
                access_token="refreshed-access",
                refresh_token=None,
                expires_in=3600,
                token_type="Bearer",
                scopes=[],
            )
        )
        self.exchange_code = AsyncMock(
            return_value=TokenGrant(
                access_token="fresh-access",
                refresh_token="fresh-refresh",
                expires_in=3600,
                token_type="Bearer",
                scopes=["https://www.googleapis.com/auth/drive.file"],
            )
        )
        self.probe = AsyncMock(return_value=None)
        self.aclose = AsyncMock()

    def classify(self, status_code: Optional[int], message: Optional[str]) -> ErrorKind:
        return classify(status_code, message)

    def build_authorization_url(self, state: str) -> str:
        return f"https://accounts.example.test/o/oauth2/auth?state={state}"


class RecordingTransport:
    """Notification transport that records deliveries (or fails on demand)."""

    def __init__(self):
        self.sent: List[Notification] = []
        self.fail = False

    async def send(self, notification: Notification) -> None:
        if self.fail:
            raise NotificationDeliveryError("mail relay unavailable")
        self.sent.append(notification)

    async def aclose(self) -> None:
        return None

    def subjects(self) -> List[str]:
        return [notification.subject for notification in self.sent]


class RecordingQueue:
    """Stands in for UploadQueue where only enqueue calls matter."""

    def __init__(self):
        self.enqueued: List[uuid.UUID] = []
        # Ids the queue reports as already queued or running
        self.busy: Set[uuid.UUID] = set()

    def enqueue(self, task_id: uuid.UUID, delay_seconds: float = 0) -> bool:
        if task_id in self.busy:
            return False
        self.enqueued.append(task_id)
        return True


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop process-wide service instances between tests."""
    reset_alert_manager()
    yield
    reset_alert_manager()
    reset_crypto_service()
    reset_health_monitor()
    reset_health_service()
    reset_notification_dispatcher()
    reset_provider_registry()
    reset_recovery_service()
    reset_token_manager()
    reset_upload_orchestrator()
    reset_upload_queue()
    reset_settings()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with deterministic, test-friendly timing."""
    return Settings(
        app_env="test",
        health_check_jitter_seconds=0,
        upload_task_timeout_seconds=5,
    )


@pytest.fixture
def crypto(test_settings) -> CryptoService:
    return CryptoService(test_settings.fernet_key)


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database with the full schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storage_health.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db_session) -> User:
    user = await UsersRepository(db_session).create_user(
        "Dana@Example.com", name="Dana"
    )
    await db_session.commit()
    return user


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def providers(fake_provider):
    return {GOOGLE_DRIVE: fake_provider}


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def alert_manager() -> AlertManager:
    return AlertManager()


@pytest.fixture
def health_service(test_settings) -> HealthService:
    return HealthService(test_settings)


@pytest.fixture
def token_manager(test_settings, health_service, providers, crypto) -> TokenManager:
    return TokenManager(
        settings=test_settings,
        health_service=health_service,
        providers=providers,
        crypto=crypto,
    )


@pytest.fixture
def dispatcher(test_settings, transport, alert_manager) -> NotificationDispatcher:
    return NotificationDispatcher(
        settings=test_settings, transport=transport, alert_manager=alert_manager
    )


@pytest.fixture
def orchestrator(
    test_settings, token_manager, health_service, dispatcher, providers
) -> UploadOrchestrator:
    return UploadOrchestrator(
        settings=test_settings,
        token_manager=token_manager,
        health_service=health_service,
        dispatcher=dispatcher,
        providers=providers,
    )


@pytest.fixture
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def store_token(db_session, crypto):
    """Store a token record for a user (valid for an hour by default)."""

    async def _store(
        user_id: uuid.UUID,
        access_token: str = "stored-access",
        refresh_token: Optional[str] = "stored-refresh",
        expires_in: Optional[timedelta] = timedelta(hours=1),
    ):
        expires_at = datetime.now(timezone.utc) + expires_in if expires_in is not None else None
        record = await ProviderTokensRepository(db_session, crypto).save_token(
            user_id,
            GOOGLE_DRIVE,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        await db_session.commit()
        return record

    return _store


@pytest.fixture
def make_task(db_session, tmp_path):
    """Create an UploadTask backed by a real local file."""

    async def _make(
        user_id: uuid.UUID,
        filename: str = "report.pdf",
        content: bytes = b"%PDF-1.4 test document",
        size_bytes: Optional[int] = None,
        error_type: Optional[str] = None,
        retry_recommended_at: Optional[datetime] = None,
        provider_file_id: Optional[str] = None,
    ) -> UploadTask:
        path = tmp_path / f"{uuid.uuid4().hex}-{filename}"
        path.write_bytes(content)
        task = await UploadTasksRepository(db_session).create_task(
            user_id,
            GOOGLE_DRIVE,
            original_filename=filename,
            local_path=str(path),
            size_bytes=len(content) if size_bytes is None else size_bytes,
        )
        task.cloud_storage_error_type = error_type
        task.retry_recommended_at = retry_recommended_at
        task.provider_file_id = provider_file_id
        await db_session.commit()
        return task

    return _make
