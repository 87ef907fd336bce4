"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    # Clear the lru_cache so we get a fresh Settings instance
    from app.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.max_concurrent_reports == 5
        assert settings.ads_api_max_concurrent == 2
        assert settings.ads_api_min_interval_ms == 500
        assert settings.report_poll_interval_minutes == 5
        get_settings.cache_clear()


def test_database_url_is_rewritten_for_asyncpg():
    from app.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host:5432/ads")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host:5432/ads"


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from app.config import get_settings
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
    from app.config import Settings
    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            database_url="postgresql+asyncpg://prod-host/db",
            api_key="",
            cron_secret="cron",
            ads_api_client_id="id",
            ads_api_client_secret="secret",
            ads_api_refresh_token="refresh",
        )


def test_production_requires_ads_credentials():
    from app.config import Settings
    with pytest.raises(ValueError, match="ADS_API_CLIENT_ID"):
        Settings(
            environment="production",
            database_url="postgresql+asyncpg://prod-host/db",
            api_key="key",
            cron_secret="cron",
            ads_api_client_id="",
            ads_api_client_secret="",
            ads_api_refresh_token="",
        )


def test_production_accepts_complete_settings():
    from app.config import Settings
    settings = Settings(
        environment="production",
        database_url="postgresql+asyncpg://prod-host/db",
        api_key="key",
        cron_secret="cron",
        ads_api_client_id="id",
        ads_api_client_secret="secret",
        ads_api_refresh_token="refresh",
    )
    assert settings.is_production is True
    assert settings.has_ads_credentials is True


def test_rejects_unknown_region():
    from app.config import Settings
    with pytest.raises(ValueError, match="Unsupported ADS_API_REGION"):
        Settings(ads_api_region="sa")
