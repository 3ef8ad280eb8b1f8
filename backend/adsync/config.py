"""Settings management for the sync engine.

WHAT:
    Pydantic settings loaded from the environment or a local `.env` file.

WHY:
    One typed place for the knobs the vault, upstream client and orchestrator
    read (page sizes, pool sizes, timeouts, defaults for new accounts).

REFERENCES:
    - adsync/security.py (ENCRYPTION_KEY)
    - adsync/services/meta_ads_client.py (META_* settings)
    - adsync/services/meta_sync_service.py (SYNC_* settings)
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: Optional[str] = None
    # Master secret for the credential vault. Any string works, the key is derived.
    ENCRYPTION_KEY: Optional[str] = None

    # Meta Marketing API
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_API_VERSION: str = "v21.0"
    META_REQUEST_TIMEOUT_SECONDS: int = 30
    META_CALLS_PER_HOUR: int = 200
    META_MAX_RETRIES: int = 3
    META_RETRY_BACKOFF_SECONDS: List[float] = [30, 60, 120]
    INSIGHTS_PAGE_SIZE: int = 500  # Meta caps insights pages at 1000
    INSIGHTS_PAGE_DELAY_SECONDS: float = 1.0

    # Defaults for newly registered client accounts
    DEFAULT_TIMEZONE: str = "America/New_York"
    DEFAULT_CURRENCY: str = "USD"

    # Orchestrator
    SYNC_MAX_ACCOUNT_WORKERS: int = 3
    SYNC_FANOUT_WORKERS: int = 4
    SYNC_ACCOUNT_TIMEOUT_SECONDS: int = 1800
    SYNC_STALE_AFTER_SECONDS: int = 7200
    ETL_SCHEDULE: str = "0 6 * * *"

    # Telemetry
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
