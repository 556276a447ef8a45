from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./clubledger.db"

    # Internal API security
    admin_api_key: str = ""

    # Xero accounting API
    xero_api_base_url: str = "https://api.xero.com/api.xro/2.0"
    xero_access_token: str = ""
    xero_tenant_id: str | None = None
    xero_request_timeout_seconds: float = 30.0
    xero_default_bank_account_code: str = "090"
    xero_default_currency: str = "CAD"

    # Xero sync worker
    xero_sync_worker_enabled: bool = False
    xero_sync_interval_seconds: int = 15 * 60
    xero_sync_trigger_label: str = "scheduler"
    xero_sync_batch_size: int = 10
    xero_sync_concurrency: int = 3
    xero_sync_delay_between_batches_ms: int = 100
    xero_sync_stuck_after_seconds: int = 30 * 60

    # Batch executor rate limit handling
    batch_rate_limit_delay_ms: int = 5_000
    batch_rate_limit_max_delay_ms: int = 60_000

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_fee_lookup_enabled: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
