"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings

# ===========================================
# Product Branding
# ===========================================
PRODUCT_NAME = "Folio Recon"
PRODUCT_TAGLINE = "One portfolio, every broker, no double counting."
PRODUCT_VERSION = "0.4.0"
PRODUCT_DESCRIPTION = "Reconciles holdings from manual entry, CSV imports and linked brokers."


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./folio_recon.db"

    # Portfolio defaults
    base_currency: str = "USD"
    default_portfolio_id: str = "default"

    # Fetching
    max_concurrent_fetches: int = 4
    fetch_timeout_seconds: float = 30.0
    fetch_retries: int = 1  # Immediate retries before a connection is marked error

    # Duplicate detection policy
    quantity_tolerance_pct: float = 1.0
    value_tolerance_pct: float = 2.0
    account_match_confidence: float = 1.0
    value_match_confidence: float = 0.6
    instrument_match_confidence: float = 0.3

    # Market Data
    price_cache_seconds: int = 60
    fx_cache_seconds: int = 3600

    # Scheduling
    sync_interval_minutes: int = 30

    # Logging
    log_level: str = "INFO"

    # Plaid Integration
    plaid_client_id: str = ""
    plaid_secret: str = ""
    plaid_env: str = "sandbox"  # sandbox, development, production

    # Schwab Trader API
    schwab_api_base: str = "https://api.schwabapi.com/trader/v1"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
