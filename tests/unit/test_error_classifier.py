"""
Tests for provider failure classification and the retry policy table.
"""

import pytest

from storage_health.config import FIVE_TERABYTES
from storage_health.services.error_classifier import (
    POLICIES,
    RECONNECTION_FIXABLE,
    ErrorKind,
    classify,
    max_attempts,
    preflight_check,
    recommended_actions,
    render_user_message,
    retry_delay,
    should_retry,
)


class TestClassify:
    """Status + message to ErrorKind mapping."""

    @pytest.mark.parametrize(
        "status_code, message, expected",
        [
            (401, "Token has been expired or revoked", ErrorKind.TOKEN_EXPIRED),
            (401, "Invalid Credentials", ErrorKind.TOKEN_EXPIRED),
            (400, "invalid_grant: Token has been expired or revoked.", ErrorKind.TOKEN_EXPIRED),
            (403, "insufficient permissions for folder", ErrorKind.FOLDER_ACCESS_DENIED),
            (403, "Insufficient Permission", ErrorKind.INSUFFICIENT_PERMISSIONS),
            (429, "Rate Limit Exceeded", ErrorKind.API_QUOTA_EXCEEDED),
            (400, "Daily quota exhausted", ErrorKind.API_QUOTA_EXCEEDED),
            (None, "Connection error: ConnectError('refused')", ErrorKind.NETWORK_ERROR),
            (None, "Request timeout: ReadTimeout('timed out')", ErrorKind.NETWORK_ERROR),
            (None, "cURL error 6: Could not resolve host", ErrorKind.NETWORK_ERROR),
            (500, "Internal Server Error", ErrorKind.UNKNOWN),
            (None, None, ErrorKind.UNKNOWN),
        ],
    )
    def test_classification_table(self, status_code, message, expected):
        assert classify(status_code, message) == expected

    def test_classification_is_deterministic(self):
        """Repeated calls with the same input give the same kind."""
        results = {classify(403, "insufficient permissions for folder") for _ in range(10)}
        assert results == {ErrorKind.FOLDER_ACCESS_DENIED}

    def test_message_matching_is_case_insensitive(self):
        assert classify(None, "RATE LIMIT exceeded") == ErrorKind.API_QUOTA_EXCEEDED
        assert classify(None, "Operation TIMED OUT") == ErrorKind.NETWORK_ERROR


class TestPolicyTable:
    """The fixed (retryable, requires_reconnection) policy per kind."""

    def test_every_kind_has_a_policy(self):
        assert set(POLICIES) == set(ErrorKind)

    def test_only_quota_and_network_are_retryable(self):
        retryable = {kind for kind, policy in POLICIES.items() if policy.retryable}
        assert retryable == {ErrorKind.API_QUOTA_EXCEEDED, ErrorKind.NETWORK_ERROR}

    def test_only_token_and_permission_errors_require_reconnection(self):
        reconnect = {kind for kind, policy in POLICIES.items() if policy.requires_reconnection}
        assert reconnect == {ErrorKind.TOKEN_EXPIRED, ErrorKind.INSUFFICIENT_PERMISSIONS}
        assert RECONNECTION_FIXABLE == reconnect

    def test_file_errors_are_never_fixable_by_reconnection(self):
        assert ErrorKind.FILE_TOO_LARGE not in RECONNECTION_FIXABLE
        assert ErrorKind.INVALID_FILE_TYPE not in RECONNECTION_FIXABLE


class TestRetrySchedule:
    """Backoff and attempt limits."""

    def test_quota_honors_retry_after(self):
        assert retry_delay(ErrorKind.API_QUOTA_EXCEEDED, 1, retry_after=120) == 120

    def test_quota_defaults_to_one_hour(self):
        assert retry_delay(ErrorKind.API_QUOTA_EXCEEDED, 3) == 3600

    def test_network_backoff_is_exponential_and_capped(self):
        delays = [retry_delay(ErrorKind.NETWORK_ERROR, n) for n in range(1, 6)]
        assert delays == [30, 60, 120, 240, 300]

    def test_other_kinds_back_off_linearly(self):
        assert retry_delay(ErrorKind.UNKNOWN, 2) == 60
        assert retry_delay(ErrorKind.UNKNOWN, 20) == 300

    def test_max_attempts_from_settings(self, test_settings):
        assert max_attempts(ErrorKind.NETWORK_ERROR, test_settings) == 3
        assert max_attempts(ErrorKind.API_QUOTA_EXCEEDED, test_settings) == 24
        assert max_attempts(ErrorKind.TOKEN_EXPIRED, test_settings) == 0

    def test_should_retry_until_attempts_exhausted(self, test_settings):
        assert should_retry(ErrorKind.NETWORK_ERROR, 1, test_settings)
        assert should_retry(ErrorKind.NETWORK_ERROR, 2, test_settings)
        assert not should_retry(ErrorKind.NETWORK_ERROR, 3, test_settings)

    @pytest.mark.parametrize(
        "kind",
        [
            ErrorKind.TOKEN_EXPIRED,
            ErrorKind.INSUFFICIENT_PERMISSIONS,
            ErrorKind.FOLDER_ACCESS_DENIED,
            ErrorKind.FILE_TOO_LARGE,
            ErrorKind.INVALID_FILE_TYPE,
            ErrorKind.UNKNOWN,
        ],
    )
    def test_non_retryable_kinds_never_retry(self, kind, test_settings):
        assert not should_retry(kind, 1, test_settings)


class TestUserMessages:
    """Rendered guidance never leaks raw exception text."""

    def test_token_expired_message(self):
        message = render_user_message(ErrorKind.TOKEN_EXPIRED, provider_name="Google Drive")
        assert "Google Drive connection has expired" in message
        assert "reconnect" in message

    def test_quota_message_includes_reset_time(self):
        message = render_user_message(ErrorKind.API_QUOTA_EXCEEDED, retry_after=1800)
        assert "30 minutes" in message
        assert "No action is required" in message

    def test_quota_message_defaults_to_one_hour(self):
        assert "1 hour" in render_user_message(ErrorKind.API_QUOTA_EXCEEDED)

    def test_file_too_large_mentions_file_and_limit(self):
        message = render_user_message(
            ErrorKind.FILE_TOO_LARGE, file_name="video.mov", max_size_bytes=FIVE_TERABYTES
        )
        assert "'video.mov'" in message
        assert "5TB" in message

    def test_unknown_uses_generic_detail_without_original(self):
        message = render_user_message(ErrorKind.UNKNOWN)
        assert message.startswith("An unexpected error occurred with Google Drive.")
        assert "contact support" in message

    def test_unknown_includes_original_provider_message(self):
        message = render_user_message(ErrorKind.UNKNOWN, original_message="Backend Error")
        assert message.endswith("Backend Error")

    def test_reconnect_actions_name_the_provider(self):
        actions = recommended_actions(ErrorKind.TOKEN_EXPIRED, "Google Drive")
        assert 'Click "Reconnect Google Drive"' in actions
        assert actions[-1] == "Retry your upload"


class TestPreflight:
    """Checks that run before any token or network work."""

    def test_blocked_extension(self, test_settings):
        assert preflight_check("setup.EXE", 10, test_settings) == ErrorKind.INVALID_FILE_TYPE

    def test_oversize_file(self, test_settings):
        size = test_settings.upload_max_file_size_bytes + 1
        assert preflight_check("backup.tar", size, test_settings) == ErrorKind.FILE_TOO_LARGE

    def test_acceptable_file(self, test_settings):
        assert preflight_check("report.pdf", 2048, test_settings) is None

    def test_file_without_extension(self, test_settings):
        assert preflight_check("Makefile", 100, test_settings) is None
