"""
Tests for application configuration and settings validation.
"""

import os
from datetime import time, timedelta
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
        assert settings.reporting_timezone == "America/Los_Angeles"
        assert settings.stream_days == 2
        assert settings.report_lag_days == 2
        assert settings.bid_floor == 0.02
        get_settings.cache_clear()


def test_database_url_rewritten_for_asyncpg():
    from app.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host/ads")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host/ads"


def test_region_selects_api_url():
    from app.config import Settings
    assert Settings(ads_api_region="EU").ads_api_url == "https://advertising-api-eu.amazon.com"


def test_unknown_region_rejected():
    from app.config import Settings
    with pytest.raises(ValueError, match="Unsupported region"):
        Settings(ads_api_region="sa")


def test_schedule_offset_and_reset_time_parsed():
    from app.config import Settings
    settings = Settings(schedule_utc_offset="+05:30", budget_reset_time="23:55")
    assert settings.schedule_tz.utcoffset(None) == timedelta(hours=5, minutes=30)
    assert settings.budget_reset_at == time(23, 55)


@pytest.mark.parametrize("offset", ["8", "-8:00", "UTC", "+25:00"])
def test_malformed_offset_rejected(offset):
    from app.config import Settings
    with pytest.raises(ValueError):
        Settings(schedule_utc_offset=offset)


def test_production_requires_ads_credentials():
    """Production mode should reject missing Amazon Ads credentials."""
    from app.config import get_settings, Settings
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="ADS_API_CLIENT_ID"):
        Settings(
            environment="production",
            database_url="postgresql+asyncpg://prod-host/db",
            cron_secret="s3cret",
        )
    get_settings.cache_clear()


def test_production_requires_cron_secret():
    from app.config import Settings
    with pytest.raises(ValueError, match="CRON_SECRET must be set"):
        Settings(
            environment="production",
            database_url="postgresql+asyncpg://prod-host/db",
            ads_api_client_id="amzn1.application-oa2-client.x",
            ads_api_client_secret="secret",
            ads_api_refresh_token="Atzr|token",
        )


def test_production_accepts_complete_settings():
    """Production mode should accept a fully configured environment."""
    from app.config import Settings
    settings = Settings(
        environment="production",
        database_url="postgresql+asyncpg://prod-host/db",
        ads_api_client_id="amzn1.application-oa2-client.x",
        ads_api_client_secret="secret",
        ads_api_refresh_token="Atzr|token",
        cron_secret="s3cret",
    )
    assert settings.is_production is True


def test_connect_args_enable_ssl_when_url_requires_it():
    """The app engine and Alembic share the same connect args."""
    import app.database as database

    with patch.object(database.settings, "database_url", "postgresql+asyncpg://db.example/ads?sslmode=require"):
        args = database._get_connect_args()
    assert args["timeout"] == 30
    assert "ssl" in args

    with patch.object(database.settings, "database_url", "postgresql+asyncpg://localhost/ads"):
        assert "ssl" not in database._get_connect_args()
