"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./nexa_platform.db"

    # Payment gateway (Pagar.me Core v5)
    pagarme_secret_key: str = ""
    pagarme_base_url: str = "https://api.pagar.me/core/v5"
    pagarme_simulation_mode: bool = False
    gateway_timeout_seconds: float = 30.0

    # External services
    sendgrid_api_key: str = ""
    mail_from: str = "no-reply@nexacreators.com"
    socket_relay_url: str = ""
    socket_relay_timeout_seconds: float = 5.0

    # Internal scheduler endpoint token
    admin_password: str = "nexa2025"

    # Contract economics
    platform_fee_rate: float = 0.10

    # Offer lifecycle
    offer_ttl_hours: int = 24

    # Milestone deadlines
    justification_window_hours: int = 24
    penalty_days: int = 7
    penalty_overdue_days: int = 7
    suspension_days: int = 7
    suspension_overdue_threshold: int = 2

    # Withdrawal audit limits
    withdrawal_max_amount: float = 1_000_000
    withdrawal_max_processing_hours: int = 72

    # In-app sweep loop
    run_sweeps_in_app: bool = False
    sweep_interval_minutes: int = 15

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
