"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from framesense.config import Environment, Settings


class TestSettings:
    """Test Settings model and validation."""

    def test_default_settings_load_correctly(self):
        """Test that default settings are loaded with correct values."""
        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEV
        assert settings.redis_url.startswith("redis://")
        assert settings.durable_tier_enabled is True
        assert settings.similarity_threshold == 85.0
        assert settings.coalesce_requests is False

    def test_environment_variables_use_prefix(self, monkeypatch):
        """Test that FRAMESENSE_ prefixed variables override defaults."""
        monkeypatch.setenv("FRAMESENSE_REDIS_URL", "")
        monkeypatch.setenv("FRAMESENSE_REQUEST_TIMEOUT_SECONDS", "12.5")

        settings = Settings(_env_file=None)

        assert settings.redis_url == ""
        assert settings.request_timeout_seconds == 12.5

    def test_environment_enum_values(self):
        """Test that Environment enum has expected values."""
        assert Environment.DEV == "dev"
        assert Environment.PROD == "prod"
        assert Environment.TEST == "test"

    def test_reset_interval_shorter_than_warming_rejected(self):
        """Test that popular counters cannot reset before a warming scan runs."""
        with pytest.raises(ValidationError) as exc_info:
            Settings(
                _env_file=None,
                warming_interval_seconds=3600,
                popular_reset_interval_seconds=60,
            )

        assert "popular_reset_interval_seconds" in str(exc_info.value)

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("similarity_threshold", 101),
            ("compression_level", 0),
            ("request_timeout_seconds", 0),
            ("fallback_backoff_scale", -1),
        ],
    )
    def test_out_of_range_values_rejected(self, field, value):
        """Test that numeric bounds are enforced."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_database_url_configuration(self):
        """Test that database URL can be configured."""
        custom_db_url = "postgresql+asyncpg://custom:pass@db:5432/custom_db"
        settings = Settings(_env_file=None, database_url=custom_db_url)
        assert settings.database_url == custom_db_url
