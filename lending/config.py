import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LENDING_DB_FILE", "lending.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))
    db_retries: int = int(os.getenv("DB_RETRIES", "3"))
    db_retry_backoff: float = float(os.getenv("DB_RETRY_BACKOFF", "0.05"))

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    default_book_copies: int = int(os.getenv("DEFAULT_BOOK_COPIES", "5"))
    ledger_max_retries: int = int(os.getenv("LEDGER_MAX_RETRIES", "3"))

    # Notification settings
    notification_webhook_url: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL")
    notification_timeout: float = float(os.getenv("NOTIFICATION_TIMEOUT", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the API and CLI entry points."""
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
