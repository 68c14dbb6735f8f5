"""Configuration management for the application."""

import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Scoring collaborator settings
    anthropic_api_key: Optional[str] = None  # Tenants may carry their own key instead
    scoring_model: str = "claude-sonnet-4-20250514"
    scoring_max_tokens: int = 4096
    scoring_timeout_seconds: float = 45.0

    # Database settings
    sqlite_db_path: str = "./data/callreview.db"

    # Run budget settings
    lookback_days: int = 7
    per_seller_quota: int = 1
    max_calls_per_run: int = 3  # Applied per tenant integration
    transcript_char_budget: int = 60_000
    stale_processing_minutes: int = 10
    skip_internal_calls: bool = False  # Skipped is terminal; opt in only

    # Platform HTTP settings
    http_timeout_seconds: float = 30.0
    token_refresh_timeout_seconds: float = 10.0
    max_list_pages: int = 20
    list_page_size: int = 50
    internal_domain: Optional[str] = None  # e.g., "company.com" for Gong party classification

    # Entry point settings
    cron_secret: Optional[str] = None
    auth_url: Optional[str] = None  # Token -> profile endpoint
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    log_level: str = "INFO"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = False


def load_settings() -> Settings:
    """Load and return application settings."""
    load_dotenv()
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
