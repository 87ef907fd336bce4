import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    database_url: str = "postgresql+asyncpg://localhost/ads_reports"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Managed Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgres://"):
            values["database_url"] = url.replace("postgres://", "postgresql+asyncpg://", 1)
        return values
    database_ssl: bool = False
    database_connect_timeout: int = 30
    # Sized for the worker sessions the scheduler can open at once
    database_pool_size: int = 20
    database_max_overflow: int = 10
    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Amazon Ads API (Login with Amazon refresh-token grant)
    ads_api_client_id: str = ""
    ads_api_client_secret: str = ""
    ads_api_refresh_token: str = ""
    ads_api_region: str = "na"

    # Throttling for calls to the reporting API
    ads_api_max_concurrent: int = 2
    ads_api_min_interval_ms: int = 500
    ads_api_retry_buffer_ms: int = 100
    ads_api_default_backoff_ms: int = 5000

    # Report dataset scheduling
    max_concurrent_reports: int = 5
    report_poll_interval_minutes: int = 5
    report_handle_timeout_hours: int = 6
    stale_refreshing_minutes: int = 30
    scheduler_enabled: bool = True
    scheduler_interval_minutes: int = 5
    shutdown_grace_seconds: int = 60

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.cron_secret:
                raise ValueError(
                    "CRON_SECRET must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.has_ads_credentials:
                raise ValueError(
                    "ADS_API_CLIENT_ID, ADS_API_CLIENT_SECRET and ADS_API_REFRESH_TOKEN "
                    "must be set in production."
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.ads_api_region.lower() not in ("na", "eu", "fe"):
            raise ValueError(f"Unsupported ADS_API_REGION: {self.ads_api_region}. Use na, eu, or fe.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def has_ads_credentials(self) -> bool:
        return bool(self.ads_api_client_id and self.ads_api_client_secret and self.ads_api_refresh_token)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
