"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    # Clear the lru_cache so we get a fresh Settings instance
    from autopilot.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.idempotency_bucket_hours == 24
        assert settings.worker_max_attempts == 3
        assert settings.action_max_deliveries == 3
        get_settings.cache_clear()


def test_settings_rewrites_plain_postgres_url():
    """Managed Postgres URLs need the asyncpg driver for the async engine."""
    from autopilot.config import Settings

    settings = Settings(environment="development", database_url="postgresql://user:pw@db.internal:5432/ads")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db.internal:5432/ads"


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from autopilot.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_production_requires_api_key():
    """Production mode should refuse to start without an API key."""
    from autopilot.config import get_settings, Settings
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            api_key="",
            encryption_key="x" * 44,
            cron_secret="cron",
            database_url="postgresql+asyncpg://prod-host/db",
        )
    get_settings.cache_clear()


def test_production_requires_cron_secret():
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="CRON_SECRET must be set"):
        Settings(
            environment="production",
            api_key="key",
            encryption_key="x" * 44,
            cron_secret="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_bucket_hours_must_be_positive():
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="IDEMPOTENCY_BUCKET_HOURS"):
        Settings(environment="development", idempotency_bucket_hours=0)
