import logging
import re
from datetime import time, timedelta, timezone
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)

# ── Region URL Mapping ────────────────────────────────────────────────
ADS_API_URLS = {
    "na": "https://advertising-api.amazon.com",
    "eu": "https://advertising-api-eu.amazon.com",
    "fe": "https://advertising-api-fe.amazon.com",
}

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):(\d{2})$")
_HHMM_RE = re.compile(r"^(\d{2}):(\d{2})$")


def parse_utc_offset(value: str) -> timezone:
    """Parse "+07:00" / "-08:00" into a fixed-offset tzinfo."""
    m = _OFFSET_RE.match(value or "")
    if not m:
        raise ValueError(f"Invalid UTC offset {value!r}, expected +HH:MM or -HH:MM")
    sign = -1 if m.group(1) == "-" else 1
    delta = timedelta(hours=int(m.group(2)), minutes=int(m.group(3)))
    if delta >= timedelta(hours=24):
        raise ValueError(f"UTC offset out of range: {value!r}")
    return timezone(sign * delta)


def parse_hhmm(value: str) -> time:
    """Parse a 24h "HH:MM" wall-clock time."""
    m = _HHMM_RE.match(value or "")
    if not m:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return time(hour, minute)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/amazon_ads"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    # Amazon Ads API (Login with Amazon refresh-token grant)
    ads_api_client_id: str = ""
    ads_api_client_secret: str = ""
    ads_api_refresh_token: str = ""
    ads_api_region: str = "na"
    ads_api_timeout_seconds: float = 30.0

    # Amazon reports "days" in the account's reporting zone
    reporting_timezone: str = "America/Los_Angeles"
    # Daily rules with a startTime are anchored to this fixed offset (no DST)
    schedule_utc_offset: str = "-08:00"

    # In-process scheduler
    scheduler_enabled: bool = True
    rule_tick_seconds: int = 60
    budget_reset_time: str = "23:55"

    # Hybrid data window: days served from the stream, days until reports settle
    stream_days: int = 2
    report_lag_days: int = 2

    bid_floor: float = 0.02
    bid_lookup_chunk_size: int = 100

    # Shared secret for /api/cron/* triggers
    cron_secret: str = ""

    @field_validator("schedule_utc_offset")
    @classmethod
    def _validate_offset(cls, v: str) -> str:
        parse_utc_offset(v)
        return v

    @field_validator("budget_reset_time")
    @classmethod
    def _validate_reset_time(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @field_validator("ads_api_region")
    @classmethod
    def _validate_region(cls, v: str) -> str:
        v = (v or "").lower()
        if v not in ADS_API_URLS:
            raise ValueError(f"Unsupported region: {v}. Use na, eu, or fe.")
        return v

    @field_validator("stream_days", "report_lag_days", "rule_tick_seconds", "bid_lookup_chunk_size")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            missing = [
                name for name in ("ads_api_client_id", "ads_api_client_secret", "ads_api_refresh_token")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(m.upper() for m in missing)} must be set in production."
                )
            if not self.cron_secret:
                raise ValueError(
                    "CRON_SECRET must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def ads_api_url(self) -> str:
        return ADS_API_URLS[self.ads_api_region]

    @property
    def schedule_tz(self) -> timezone:
        return parse_utc_offset(self.schedule_utc_offset)

    @property
    def budget_reset_at(self) -> time:
        return parse_hhmm(self.budget_reset_time)


@lru_cache
def get_settings() -> Settings:
    return Settings()
