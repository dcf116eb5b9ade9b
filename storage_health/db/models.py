"""
Database models for Storage Health Core.

This module defines SQLAlchemy models for:
- User accounts that own storage connections
- Provider OAuth tokens with encrypted storage (one per user/provider)
- Consolidated connection health records (one per user/provider)
- Upload tasks waiting to be transferred to the provider
- OAuth state tokens for the connect/callback flow

Security: All OAuth tokens are encrypted at rest using Fernet encryption.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always comes back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        # SQLite drops tzinfo on the way back
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class User(Base):
    """
    User model for connection ownership and notification delivery.

    Attributes:
        id: Unique user identifier (UUID)
        email: Address used for connection notifications
        name: Display name used in notification greetings
        status: Account status (active, inactive, suspended)
        created_at: Account creation timestamp
        updated_at: Last modification timestamp
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique user identifier",
    )

    email: Mapped[str] = mapped_column(
        String(320),
        unique=True,
        nullable=False,
        doc="User's email address (stored lowercase)",
    )

    name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="Display name for notifications"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        doc="Account status: active, inactive, suspended",
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, doc="Account creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        doc="Last modification timestamp",
    )

    provider_tokens: Mapped[list["ProviderToken"]] = relationship(
        "ProviderToken",
        back_populates="user",
        cascade="all, delete-orphan",
        doc="OAuth tokens for every connected storage provider",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, status={self.status})>"


class ProviderToken(Base):
    """
    OAuth token record for one (user, provider) pair.

    Created on the first successful authorization and mutated only by the
    token manager. The refresh token is never replaced by an empty value.

    Attributes:
        id: Unique token record identifier
        user_id: Owner of the connection
        provider: Storage provider id (e.g. 'google-drive')
        access_token_ciphertext: Encrypted access token
        refresh_token_ciphertext: Encrypted refresh token (if granted)
        expires_at: Access token expiry
        token_type: Token type reported by the provider (usually 'Bearer')
        scopes: Granted OAuth scopes
    """

    __tablename__ = "provider_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique token identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="Foreign key to User table",
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, doc="Storage provider id"
    )

    access_token_ciphertext: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, doc="Encrypted access token (Fernet encrypted)"
    )

    refresh_token_ciphertext: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary,
        nullable=True,
        doc="Encrypted refresh token (Fernet encrypted, if available)",
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Access token expiration timestamp"
    )

    token_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Bearer", doc="OAuth token type"
    )

    scopes: Mapped[Optional[list[str]]] = mapped_column(
        JSON, nullable=True, doc="Granted OAuth scopes"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, doc="Token creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        doc="Last modification timestamp",
    )

    user: Mapped["User"] = relationship(
        "User", back_populates="provider_tokens", doc="User who owns this token"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_pt_user_provider"),
        Index("ix_pt_expires_at", "expires_at"),
    )

    @property
    def supports_refresh(self) -> bool:
        """Whether a refresh token is on file."""
        return self.refresh_token_ciphertext is not None

    def is_expired(self, skew_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        """Check if the access token is expired (tokens without expiry never are)."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return (self.expires_at.timestamp() - skew_seconds) <= now.timestamp()

    def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        """Check if the access token expires inside the given window."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at.timestamp() - now.timestamp() <= seconds

    def __repr__(self) -> str:
        return (
            f"<ProviderToken(id={self.id}, user_id={self.user_id}, "
            f"provider={self.provider}, expires_at={self.expires_at})>"
        )


class ConnectionHealth(Base):
    """
    Consolidated connection health for one (user, provider) pair.

    Exactly one row per pair. Rows are upserted on first touch and then only
    updated in place by the health service; failure counters are incremented
    inside the database to avoid lost updates between concurrent workers.

    Attributes:
        status: Raw signal derived from consecutive failures
            (healthy, degraded, unhealthy)
        consolidated_status: Externally visible verdict
            (healthy, connection_issues, authentication_required)
        consecutive_failures: Failures since the last fully successful operation
        last_error_type: ErrorKind of the most recent failure
        last_error_message: Provider or classifier message for that failure
        requires_reconnection: User must re-authorize before uploads can succeed
        last_successful_operation_at: Last fully successful operation
        last_token_refresh_attempt_at: Last refresh attempt (success or failure)
        token_refresh_failures: Refresh failures since the last successful refresh
        operational_test_result: Result of the last probe/upload (success, failed)
        token_expires_at: Copy of the token expiry for dashboard queries
    """

    __tablename__ = "connection_health"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique record identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="Foreign key to User table",
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, doc="Storage provider id"
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="healthy", doc="Raw health signal"
    )

    consolidated_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="healthy",
        doc="Externally visible health verdict",
    )

    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Failures since last success"
    )

    last_error_type: Mapped[Optional[str]] = mapped_column(
        String(40), nullable=True, doc="ErrorKind of the most recent failure"
    )

    last_error_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, doc="Message of the most recent failure"
    )

    requires_reconnection: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, doc="User must re-authorize"
    )

    last_successful_operation_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last fully successful operation"
    )

    last_token_refresh_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last token refresh attempt"
    )

    token_refresh_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Refresh failures since last success"
    )

    operational_test_result: Mapped[Optional[str]] = mapped_column(
        String(10), nullable=True, doc="success, failed, or NULL when never tested"
    )

    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Access token expiry at last refresh"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, doc="Record creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        doc="Last modification timestamp",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_ch_user_provider"),
        Index("ix_ch_consolidated_status", "consolidated_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConnectionHealth(user_id={self.user_id}, provider={self.provider}, "
            f"consolidated_status={self.consolidated_status}, "
            f"consecutive_failures={self.consecutive_failures})>"
        )


class UploadTask(Base):
    """
    One file pending transfer to a storage provider.

    A task with a provider_file_id is finished and is never touched by the
    retry machinery again. A null cloud_storage_error_type means the task is
    not currently blocked.
    """

    __tablename__ = "upload_tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique task identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="Owner of the destination connection",
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, doc="Destination storage provider id"
    )

    original_filename: Mapped[str] = mapped_column(
        String(1024), nullable=False, doc="Filename as submitted"
    )

    local_path: Mapped[str] = mapped_column(
        String(4096), nullable=False, doc="Location of the bytes on local storage"
    )

    mime_type: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="Declared content type"
    )

    size_bytes: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, doc="File size in bytes"
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, doc="Optional description stored with the remote file"
    )

    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Upload attempts since last reset"
    )

    cloud_storage_error_type: Mapped[Optional[str]] = mapped_column(
        String(40), nullable=True, doc="ErrorKind blocking this task (NULL = not blocked)"
    )

    cloud_storage_error_context: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="user_message, requires_reconnection and technical details",
    )

    retry_recommended_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="When a retry was last scheduled or recommended"
    )

    provider_file_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="Remote file id (set on success)"
    )

    last_processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Start of the most recent attempt"
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Time the upload succeeded"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, doc="Task creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        doc="Last modification timestamp",
    )

    __table_args__ = (
        Index("ix_ut_user_provider", "user_id", "provider"),
        Index("ix_ut_error_type", "cloud_storage_error_type"),
    )

    @property
    def is_completed(self) -> bool:
        return self.provider_file_id is not None

    @property
    def status(self) -> str:
        """Derived task status for API responses."""
        if self.is_completed:
            return "completed"
        if self.cloud_storage_error_type is not None:
            return "failed"
        return "pending"

    def clear_error(self) -> None:
        """Clear the blocking error fields."""
        self.cloud_storage_error_type = None
        self.cloud_storage_error_context = None

    def __repr__(self) -> str:
        return (
            f"<UploadTask(id={self.id}, provider={self.provider}, "
            f"status={self.status}, attempts={self.attempts})>"
        )


class OAuthState(Base):
    """
    OAuth state management for CSRF protection and user binding.

    Each state is bound to the user starting the connect flow, expires after
    a short TTL, and can be consumed once.
    """

    __tablename__ = "oauth_states"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique state identifier"
    )

    state: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
        doc="Cryptographically random state token for CSRF protection",
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="User completing the connect flow",
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, doc="Storage provider id"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, doc="State creation timestamp"
    )

    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, doc="State expiration timestamp (TTL enforcement)"
    )

    used_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Usage timestamp (NULL = unused)"
    )

    __table_args__ = (Index("ix_oauth_state_expires", "expires_at"),)

    @property
    def is_expired(self) -> bool:
        """Check if this state token is expired."""
        return utcnow() >= self.expires_at

    @property
    def is_used(self) -> bool:
        """Check if this state token has been used."""
        return self.used_at is not None

    @property
    def is_valid(self) -> bool:
        """Check if this state token is valid (not expired and not used)."""
        return not self.is_expired and not self.is_used

    def mark_used(self) -> None:
        """Mark this state token as used."""
        self.used_at = utcnow()

    def __repr__(self) -> str:
        status = (
            "valid" if self.is_valid else ("expired" if self.is_expired else "used")
        )
        return (
            f"<OAuthState(id={self.id}, provider={self.provider}, "
            f"state={self.state[:8]}..., status={status})>"
        )
