"""
OAuth token lifecycle for storage provider connections.

The TokenManager owns the TokenRecord of every (user, provider) pair:
- OAuth state creation/validation for the connect flow (CSRF protection)
- Authorization code exchange and encrypted token storage
- ``ensure_valid_token``: return the stored access token while it is valid,
  otherwise perform exactly one refresh and record the outcome on the
  connection health record

Refresh is single-flight per (user, provider): an in-process asyncio.Lock
plus a best-effort PostgreSQL advisory lock, with the expiry re-checked
under the lock so concurrent callers reuse the token the first one stored.
Retrying a failed refresh is the caller's job.
"""

import secrets
import time
import uuid
from asyncio import Lock
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, NamedTuple, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import (
    OAuthState,
    ProviderToken,
    ProviderTokensRepository,
    RepositoryError,
    try_advisory_lock,
)
from ..providers.google_drive import ProviderError, StorageProvider, get_provider
from ..utils.alerting import get_alert_manager
from ..utils.crypto import CryptoService, get_crypto_service
from .health_service import HealthService, get_health_service

logger = structlog.get_logger(__name__)


class TokenManagerError(Exception):
    """Base exception for TokenManager operations."""

    pass


class StateValidationError(TokenManagerError):
    """Raised when OAuth state validation fails."""

    pass


class TokenExchangeError(TokenManagerError):
    """Raised when the authorization code cannot be exchanged for tokens."""

    pass


class TokenResult(NamedTuple):
    """
    Outcome of ``ensure_valid_token``.

    classification:
        valid - stored token returned unchanged
        refreshed - a refresh succeeded and the new token is returned
        transient - refresh failed transiently; ok is still True when the
            current token has not expired yet
        terminal - grant revoked/invalid or no way to renew; user must reconnect
        not_connected - no token stored for this pair
    """

    ok: bool
    access_token: Optional[str] = None
    error: Optional[str] = None
    classification: str = "valid"
    expires_at: Optional[datetime] = None

    @property
    def requires_reconnection(self) -> bool:
        return self.classification in ("terminal", "not_connected")


class RefreshMetrics:
    """Counters for token refresh operations."""

    def __init__(self):
        self.refresh_attempts_total = 0
        self.refresh_success_total = 0
        self.refresh_failures: Dict[str, int] = defaultdict(int)
        self.refresh_latencies: list[float] = []

    def record_success(self, latency_ms: float) -> None:
        self.refresh_attempts_total += 1
        self.refresh_success_total += 1
        self.refresh_latencies = (self.refresh_latencies + [latency_ms])[-100:]

    def record_failure(self, classification: str) -> None:
        self.refresh_attempts_total += 1
        self.refresh_failures[classification] += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "refresh_attempts_total": self.refresh_attempts_total,
            "refresh_success_total": self.refresh_success_total,
            "success_rate": self.refresh_success_total / max(1, self.refresh_attempts_total),
            "avg_latency_ms": sum(self.refresh_latencies) / max(1, len(self.refresh_latencies)),
            "failures_by_reason": dict(self.refresh_failures),
        }


class TokenManager:
    """Token lifecycle manager shared by uploads, health checks and the OAuth flow."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        health_service: Optional[HealthService] = None,
        providers: Optional[Mapping[str, StorageProvider]] = None,
        crypto: Optional[CryptoService] = None,
    ):
        self.settings = settings or get_settings()
        self.health = health_service or get_health_service()
        self._providers = providers
        self._crypto = crypto
        self.state_ttl = timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        self._refresh_locks: Dict[str, Lock] = {}
        self.refresh_metrics = RefreshMetrics()

    def provider(self, provider_id: str) -> StorageProvider:
        if self._providers is not None:
            return self._providers[provider_id]
        return get_provider(provider_id)

    def _tokens(self, db: AsyncSession) -> ProviderTokensRepository:
        return ProviderTokensRepository(db, self._crypto or get_crypto_service())

    # ===== OAuth State =====

    async def create_oauth_state(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str
    ) -> OAuthState:
        """Create a one-time state token bound to the user starting the flow."""
        expires_at = datetime.now(timezone.utc) + self.state_ttl
        oauth_state = OAuthState(
            state=secrets.token_urlsafe(48),
            user_id=user_id,
            provider=provider,
            expires_at=expires_at,
        )
        db.add(oauth_state)
        await db.commit()

        logger.info(
            "OAuth state created",
            state_id=str(oauth_state.id),
            provider=provider,
            user_id=str(user_id),
            expires_at=expires_at.isoformat(),
        )
        return oauth_state

    async def validate_and_consume_state(
        self, db: AsyncSession, state_token: str, provider: str
    ) -> OAuthState:
        """
        Validate a callback state token and mark it used.

        Raises:
            StateValidationError: If the state is unknown, expired or already used
        """
        result = await db.execute(
            select(OAuthState).where(
                OAuthState.state == state_token, OAuthState.provider == provider
            )
        )
        oauth_state = result.scalar_one_or_none()

        if oauth_state is None:
            logger.warning(
                "OAuth state not found", state_token=state_token[:8] + "...", provider=provider
            )
            raise StateValidationError("Invalid or expired state token")
        if oauth_state.is_expired:
            logger.warning("OAuth state expired", state_id=str(oauth_state.id))
            raise StateValidationError("State token expired")
        if oauth_state.is_used:
            logger.warning("OAuth state already used", state_id=str(oauth_state.id))
            raise StateValidationError("State token already used")

        oauth_state.mark_used()
        await db.commit()
        return oauth_state

    async def cleanup_expired_states(self, db: AsyncSession) -> int:
        result = await db.execute(
            delete(OAuthState).where(OAuthState.expires_at < datetime.now(timezone.utc))
        )
        await db.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Cleaned up expired OAuth states", count=count)
        return count

    async def build_authorization_url(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str
    ) -> str:
        oauth_state = await self.create_oauth_state(db, user_id, provider)
        return self.provider(provider).build_authorization_url(oauth_state.state)

    # ===== Code Exchange =====

    async def exchange_code(
        self, db: AsyncSession, user_id: uuid.UUID, provider: str, code: str
    ) -> ProviderToken:
        """
        Exchange an authorization code and store the resulting tokens.

        A grant without a refresh token keeps the one already on file.

        Raises:
            TokenExchangeError: If the provider rejects the code or is unreachable
        """
        try:
            grant = await self.provider(provider).exchange_code(code)
        except ProviderError as e:
            logger.error(
                "Authorization code exchange failed",
                user_id=str(user_id),
                provider=provider,
                status_code=e.status_code,
                error=e.message,
            )
            raise TokenExchangeError(f"Token exchange failed: {e.message}") from e

        try:
            record = await self._tokens(db).save_token(
                user_id,
                provider,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=grant.expires_at(),
                token_type=grant.token_type,
                scopes=grant.scopes or None,
            )
            await db.commit()
        except RepositoryError as e:
            raise TokenExchangeError(f"Failed to store tokens: {e}") from e

        logger.info(
            "Provider tokens stored",
            user_id=str(user_id),
            provider=provider,
            has_refresh_token=record.supports_refresh,
            expires_at=record.expires_at.isoformat() if record.expires_at else None,
        )
        return record

    async def disconnect(self, db: AsyncSession, user_id: uuid.UUID, provider: str) -> bool:
        """Delete the stored tokens for an explicit user disconnect."""
        removed = await self._tokens(db).delete_token(user_id, provider)
        await db.commit()
        if removed:
            logger.info("Provider disconnected", user_id=str(user_id), provider=provider)
        return removed

    # ===== Token Validity =====

    def _get_refresh_lock(self, user_id: uuid.UUID, provider: str) -> Lock:
        key = f"{user_id}:{provider}"
        if key not in self._refresh_locks:
            self._refresh_locks[key] = Lock()
        return self._refresh_locks[key]

    def _needs_refresh(self, record: ProviderToken, refresh_within: Optional[int]) -> bool:
        if refresh_within:
            return record.expires_within(refresh_within)
        return record.is_expired(self.settings.token_expiry_skew_seconds)

    async def ensure_valid_token(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        *,
        refresh_within: Optional[int] = None,
    ) -> TokenResult:
        """
        Return a usable access token, refreshing at most once.

        Args:
            refresh_within: Refresh proactively when the token expires within
                this many seconds (default: only once it has expired)
        """
        tokens = self._tokens(db)
        record = await tokens.get_token(user_id, provider)
        if record is None:
            return TokenResult(
                ok=False,
                error=f"No {provider} connection for this user",
                classification="not_connected",
            )

        if not self._needs_refresh(record, refresh_within):
            return self._current(tokens, record)

        if not record.supports_refresh:
            if not record.is_expired(self.settings.token_expiry_skew_seconds):
                return self._current(tokens, record)
            message = "Access token expired and no refresh token is available"
            await self.health.record_token_refresh_failure(
                db, user_id, provider, permanent=True, message=message
            )
            return TokenResult(ok=False, error=message, classification="terminal")

        async with self._get_refresh_lock(user_id, provider):
            if not await try_advisory_lock(db, f"{user_id}:{provider}"):
                logger.debug(
                    "Advisory lock not acquired, another process is refreshing",
                    user_id=str(user_id),
                    provider=provider,
                )
                if record.is_expired(self.settings.token_expiry_skew_seconds):
                    return TokenResult(
                        ok=False,
                        error="Token refresh in progress elsewhere",
                        classification="transient",
                    )
                return self._current(tokens, record)

            # Double-check under the lock; a concurrent caller may have refreshed
            await db.refresh(record)
            if not self._needs_refresh(record, refresh_within):
                logger.debug(
                    "Token already refreshed by concurrent request",
                    user_id=str(user_id),
                    provider=provider,
                )
                return self._current(tokens, record)

            return await self._refresh(db, tokens, record)

    def _current(self, tokens: ProviderTokensRepository, record: ProviderToken) -> TokenResult:
        try:
            access_token = tokens.decrypt_access_token(record)
        except RepositoryError as e:
            return TokenResult(ok=False, error=str(e), classification="terminal")
        return TokenResult(
            ok=True,
            access_token=access_token,
            classification="valid",
            expires_at=record.expires_at,
        )

    async def _refresh(
        self, db: AsyncSession, tokens: ProviderTokensRepository, record: ProviderToken
    ) -> TokenResult:
        user_id, provider = record.user_id, record.provider
        start_time = time.time()

        try:
            refresh_token = tokens.decrypt_refresh_token(record)
            grant = await self.provider(provider).refresh(refresh_token)
        except (ProviderError, RepositoryError) as e:
            if isinstance(e, ProviderError):
                message = e.message
                permanent = e.is_permanent_auth_failure
            else:
                message = str(e)
                permanent = True
            return await self._refresh_failed(db, record, message, permanent)

        record = await tokens.save_token(
            user_id,
            provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(),
            token_type=grant.token_type,
            scopes=grant.scopes or None,
        )
        await self.health.record_token_refresh_success(
            db, user_id, provider, expires_at=record.expires_at
        )

        latency_ms = (time.time() - start_time) * 1000
        self.refresh_metrics.record_success(latency_ms)
        logger.info(
            "Token refresh successful",
            user_id=str(user_id),
            provider=provider,
            has_new_refresh_token=bool(grant.refresh_token),
            latency_ms=round(latency_ms, 2),
        )

        return TokenResult(
            ok=True,
            access_token=grant.access_token,
            classification="refreshed",
            expires_at=record.expires_at,
        )

    async def _refresh_failed(
        self, db: AsyncSession, record: ProviderToken, message: str, permanent: bool
    ) -> TokenResult:
        user_id, provider = record.user_id, record.provider
        still_valid = not record.is_expired(self.settings.token_expiry_skew_seconds)
        classification = "terminal" if permanent else "transient"

        update = await self.health.record_token_refresh_failure(
            db, user_id, provider, permanent=permanent, message=message
        )
        self.refresh_metrics.record_failure(classification)
        get_alert_manager().alert_token_refresh_failure(
            user_id=str(user_id),
            provider=provider,
            failure_count=update.record.token_refresh_failures,
            error_message=message,
            is_terminal=permanent,
        )
        logger.warning(
            "Token refresh failed",
            user_id=str(user_id),
            provider=provider,
            error=message,
            classification=classification,
            failure_count=update.record.token_refresh_failures,
        )

        if permanent:
            return TokenResult(ok=False, error=message, classification="terminal")

        if still_valid:
            # Proactive refresh failed but the current token still works
            await db.refresh(record)
            current = self._current(self._tokens(db), record)
            return current._replace(classification="transient", error=message)

        return TokenResult(ok=False, error=message, classification="transient")


_token_manager: Optional[TokenManager] = None


def get_token_manager() -> TokenManager:
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenManager()
    return _token_manager


def reset_token_manager() -> None:
    global _token_manager
    _token_manager = None
