"""
Tests for configuration loading and validation.

Validates environment variable handling, defaults, validation rules and the
Fernet key fallback.
"""

import os
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError

from storage_health.config import FIVE_TERABYTES, Settings


class TestConfiguration:
    """Test suite for configuration management."""

    def test_settings_loads_with_defaults(self):
        """Settings should load with the documented operating defaults."""
        settings = Settings(app_env="test")

        assert settings.app_name == "Storage Health Core"
        assert settings.health_degraded_threshold == 2
        assert settings.health_escalation_threshold == 5
        assert settings.proactive_refresh_minutes == 15
        assert settings.proactive_expiry_window_minutes == 60
        assert settings.reconnection_cooldown_minutes == 5
        assert settings.notification_throttle_hours == 24
        assert settings.upload_max_file_size_bytes == FIVE_TERABYTES
        assert settings.token_expiry_skew_seconds == 0

    def test_proactive_window_in_seconds(self):
        settings = Settings(app_env="test", proactive_expiry_window_minutes=30)
        assert settings.proactive_expiry_window_seconds == 1800

    def test_blocked_extensions_from_comma_separated_env(self):
        """Extensions are normalized to lowercase without dots."""
        with patch.dict(os.environ, {"UPLOAD_BLOCKED_EXTENSIONS": ".EXE, bat,.Msi"}):
            settings = Settings()

        assert settings.upload_blocked_extensions == ["exe", "bat", "msi"]

    def test_blocked_extensions_from_json_env(self):
        with patch.dict(os.environ, {"UPLOAD_BLOCKED_EXTENSIONS": '["js", "VBS"]'}):
            settings = Settings()

        assert settings.upload_blocked_extensions == ["js", "vbs"]

    def test_escalation_threshold_cannot_precede_degradation(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(health_degraded_threshold=4, health_escalation_threshold=3)

        assert "health_escalation_threshold" in str(exc_info.value)

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError):
            Settings(log_level="VERBOSE")

    def test_log_level_is_uppercased(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_app_env_rejected(self):
        with pytest.raises(ValidationError):
            Settings(app_env="qa")

    def test_fernet_key_generated_when_missing(self):
        """A usable key is generated when none is configured."""
        with patch.dict(os.environ, {"FERNET_KEY": ""}):
            settings = Settings()

        assert settings.fernet_key
        Fernet(settings.fernet_key.encode())

    def test_explicit_fernet_key_is_kept(self):
        key = Fernet.generate_key().decode()
        assert Settings(fernet_key=key).fernet_key == key

    def test_production_requires_database_and_oauth(self):
        with patch.dict(os.environ, {"DATABASE_URL": "", "GOOGLE_CLIENT_ID": ""}):
            settings = Settings(app_env="production")

        with pytest.raises(ValueError) as exc_info:
            settings.validate_required_for_production()

        message = str(exc_info.value)
        assert "DATABASE_URL" in message
        assert "Google OAuth" in message
