"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong type, the app fails fast with a
clear error message.

Usage:
    from escrow_ledger.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the escrow ledger service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/escrow_ledger"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Paystack ---
    paystack_secret_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 10.0
    paystack_simulate: bool = True

    # --- Ledger ---
    default_currency: str = "NGN"
    transaction_ref_max_attempts: int = 5
    order_number_max_attempts: int = 10
    order_confirmation_window_hours: int = 48

    # --- Background sweeps (0 disables) ---
    escrow_sweep_interval_seconds: int = 3600

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def webhook_signing_secret(self) -> str:
        """Secret used to verify webhook signatures.

        Paystack signs webhooks with the account secret key unless a
        dedicated webhook secret is configured.
        """
        return self.paystack_webhook_secret or self.paystack_secret_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
