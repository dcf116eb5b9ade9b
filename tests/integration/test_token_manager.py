"""
Integration tests for the token lifecycle: validity checks, single-flight
refresh, failure classification and the OAuth state/exchange flow.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from storage_health.db import ProviderTokensRepository
from storage_health.providers.google_drive import GOOGLE_DRIVE, ProviderError, TokenGrant
from storage_health.services.token_manager import (
    StateValidationError,
    TokenExchangeError,
)
from storage_health.utils.alerting import get_alert_manager


class TestEnsureValidToken:
    """Refresh-once semantics of ensure_valid_token."""

    async def test_valid_token_returned_without_refresh(
        self, db_session, user, store_token, token_manager, fake_provider
    ):
        await store_token(user.id)

        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        assert result.ok
        assert result.classification == "valid"
        assert result.access_token == "stored-access"
        fake_provider.refresh.assert_not_awaited()

    async def test_not_connected(self, db_session, user, token_manager):
        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        assert not result.ok
        assert result.classification == "not_connected"
        assert result.requires_reconnection

    async def test_expired_token_refreshed_and_refresh_token_preserved(
        self, db_session, user, store_token, token_manager, fake_provider, crypto, health_service
    ):
        """A grant without a refresh token keeps the stored one."""
        await store_token(user.id, expires_in=timedelta(minutes=-5))

        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        assert result.ok
        assert result.classification == "refreshed"
        assert result.access_token == "refreshed-access"
        fake_provider.refresh.assert_awaited_once_with("stored-refresh")

        tokens = ProviderTokensRepository(db_session, crypto)
        record = await tokens.get_token(user.id, GOOGLE_DRIVE)
        assert tokens.decrypt_access_token(record) == "refreshed-access"
        assert tokens.decrypt_refresh_token(record) == "stored-refresh"
        assert record.expires_at > datetime.now(timezone.utc) + timedelta(minutes=55)

        health = await health_service.get_record(db_session, user.id, GOOGLE_DRIVE)
        assert health.last_token_refresh_attempt_at is not None
        assert health.token_refresh_failures == 0
        assert health.token_expires_at is not None

    async def test_rotated_refresh_token_is_stored(
        self, db_session, user, store_token, token_manager, fake_provider, crypto
    ):
        await store_token(user.id, expires_in=timedelta(minutes=-5))
        fake_provider.refresh.return_value = TokenGrant(
            access_token="rotated-access",
            refresh_token="rotated-refresh",
            expires_in=3600,
            token_type="Bearer",
            scopes=[],
        )

        await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        tokens = ProviderTokensRepository(db_session, crypto)
        record = await tokens.get_token(user.id, GOOGLE_DRIVE)
        assert tokens.decrypt_refresh_token(record) == "rotated-refresh"

    async def test_concurrent_callers_refresh_once(
        self, session_factory, user, store_token, token_manager, fake_provider
    ):
        """Concurrent callers for the same pair share a single refresh."""
        await store_token(user.id, expires_in=timedelta(minutes=-5))
        grant = fake_provider.refresh.return_value

        async def slow_refresh(refresh_token):
            await asyncio.sleep(0.05)
            return grant

        fake_provider.refresh.side_effect = slow_refresh

        async def call():
            async with session_factory() as session:
                return await token_manager.ensure_valid_token(session, user.id, GOOGLE_DRIVE)

        results = await asyncio.gather(call(), call(), call())

        assert fake_provider.refresh.await_count == 1
        assert all(result.ok for result in results)
        assert {result.access_token for result in results} == {"refreshed-access"}
        assert sorted(result.classification for result in results) == [
            "refreshed",
            "valid",
            "valid",
        ]

    async def test_revoked_grant_is_terminal(
        self, db_session, user, store_token, token_manager, fake_provider, health_service
    ):
        await store_token(user.id, expires_in=timedelta(minutes=-5))
        fake_provider.refresh.side_effect = ProviderError(
            "invalid_grant: Token has been expired or revoked.", status_code=400
        )

        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        assert not result.ok
        assert result.classification == "terminal"
        assert result.requires_reconnection

        health = await health_service.get_record(db_session, user.id, GOOGLE_DRIVE)
        assert health.requires_reconnection
        assert health.last_error_type == "token_expired"
        assert health.consolidated_status == "authentication_required"
        assert get_alert_manager().sent_count == 1
        assert token_manager.refresh_metrics.refresh_failures["terminal"] == 1

    async def test_transient_failure_keeps_still_valid_token(
        self, db_session, user, store_token, token_manager, fake_provider, health_service
    ):
        """A failed proactive refresh does not take away a working token."""
        await store_token(user.id, expires_in=timedelta(minutes=5))
        fake_provider.refresh.side_effect = ProviderError("Backend Error", status_code=503)

        result = await token_manager.ensure_valid_token(
            db_session, user.id, GOOGLE_DRIVE, refresh_within=900
        )

        assert result.ok
        assert result.classification == "transient"
        assert result.access_token == "stored-access"

        health = await health_service.get_record(db_session, user.id, GOOGLE_DRIVE)
        assert health.token_refresh_failures == 1
        assert not health.requires_reconnection
        assert health.consolidated_status == "connection_issues"

    async def test_transient_failure_with_expired_token(
        self, db_session, user, store_token, token_manager, fake_provider
    ):
        await store_token(user.id, expires_in=timedelta(minutes=-1))
        fake_provider.refresh.side_effect = ProviderError("Connection error: ConnectError()")

        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        assert not result.ok
        assert result.classification == "transient"
        assert not result.requires_reconnection

    async def test_expired_without_refresh_token_is_terminal(
        self, db_session, user, store_token, token_manager, fake_provider, health_service
    ):
        await store_token(user.id, refresh_token=None, expires_in=timedelta(minutes=-1))

        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)

        assert result.classification == "terminal"
        fake_provider.refresh.assert_not_awaited()
        health = await health_service.get_record(db_session, user.id, GOOGLE_DRIVE)
        assert health.requires_reconnection

    async def test_token_without_expiry_never_refreshes(
        self, db_session, user, store_token, token_manager, fake_provider
    ):
        await store_token(user.id, expires_in=None)

        result = await token_manager.ensure_valid_token(
            db_session, user.id, GOOGLE_DRIVE, refresh_within=900
        )

        assert result.classification == "valid"
        fake_provider.refresh.assert_not_awaited()


class TestOAuthFlow:
    """State tokens and authorization code exchange."""

    async def test_state_is_single_use(self, db_session, user, token_manager):
        oauth_state = await token_manager.create_oauth_state(db_session, user.id, GOOGLE_DRIVE)

        consumed = await token_manager.validate_and_consume_state(
            db_session, oauth_state.state, GOOGLE_DRIVE
        )
        assert consumed.user_id == user.id

        with pytest.raises(StateValidationError):
            await token_manager.validate_and_consume_state(
                db_session, oauth_state.state, GOOGLE_DRIVE
            )

    async def test_expired_state_rejected(self, db_session, user, token_manager):
        oauth_state = await token_manager.create_oauth_state(db_session, user.id, GOOGLE_DRIVE)
        oauth_state.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await db_session.commit()

        with pytest.raises(StateValidationError):
            await token_manager.validate_and_consume_state(
                db_session, oauth_state.state, GOOGLE_DRIVE
            )

        assert await token_manager.cleanup_expired_states(db_session) == 1

    async def test_unknown_state_rejected(self, db_session, token_manager):
        with pytest.raises(StateValidationError):
            await token_manager.validate_and_consume_state(db_session, "forged", GOOGLE_DRIVE)

    async def test_authorization_url_carries_state(self, db_session, user, token_manager):
        url = await token_manager.build_authorization_url(db_session, user.id, GOOGLE_DRIVE)

        state = url.split("state=", 1)[1]
        consumed = await token_manager.validate_and_consume_state(db_session, state, GOOGLE_DRIVE)
        assert consumed.user_id == user.id

    async def test_exchange_code_stores_tokens(
        self, db_session, user, token_manager, fake_provider, crypto
    ):
        record = await token_manager.exchange_code(db_session, user.id, GOOGLE_DRIVE, "auth-code")

        fake_provider.exchange_code.assert_awaited_once_with("auth-code")
        tokens = ProviderTokensRepository(db_session, crypto)
        assert tokens.decrypt_access_token(record) == "fresh-access"
        assert tokens.decrypt_refresh_token(record) == "fresh-refresh"
        assert record.scopes == ["https://www.googleapis.com/auth/drive.file"]

    async def test_exchange_code_failure(self, db_session, user, token_manager, fake_provider):
        fake_provider.exchange_code.side_effect = ProviderError(
            "invalid_grant: Bad Request", status_code=400
        )

        with pytest.raises(TokenExchangeError):
            await token_manager.exchange_code(db_session, user.id, GOOGLE_DRIVE, "used-code")

    async def test_disconnect_removes_tokens(self, db_session, user, store_token, token_manager):
        await store_token(user.id)

        assert await token_manager.disconnect(db_session, user.id, GOOGLE_DRIVE)
        assert not await token_manager.disconnect(db_session, user.id, GOOGLE_DRIVE)

        result = await token_manager.ensure_valid_token(db_session, user.id, GOOGLE_DRIVE)
        assert result.classification == "not_connected"
