"""
Application configuration.

All configuration is loaded from environment variables.
Never hardcode secrets or connection strings in code.
"""

import os
from functools import lru_cache

from dotenv import load_dotenv

# Load .env file into environment variables
load_dotenv()


def _csv(name: str) -> frozenset[str]:
    raw = os.getenv(name, "")
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


class Settings:
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Audit & Security Event Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "postgresql://localhost:5432/audit_engine"
    )

    # Environment
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Correlation thresholds
    FAILED_LOGIN_THRESHOLD: int = int(os.getenv("FAILED_LOGIN_THRESHOLD", "5"))
    FAILED_LOGIN_WINDOW_MINUTES: int = int(
        os.getenv("FAILED_LOGIN_WINDOW_MINUTES", "15")
    )
    LOW_SCORE_THRESHOLD: int = int(os.getenv("LOW_SCORE_THRESHOLD", "40"))
    MAX_LOGIN_ATTEMPTS: int = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))

    # IP reputation oracle
    REPUTATION_URL: str | None = os.getenv("REPUTATION_URL") or None
    REPUTATION_TIMEOUT_SECONDS: float = float(
        os.getenv("REPUTATION_TIMEOUT_SECONDS", "2.0")
    )
    DENYLISTED_IPS: frozenset[str] = _csv("DENYLISTED_IPS")

    # Aggregation
    TOP_N: int = int(os.getenv("TOP_N", "5"))

    # Consumers
    CONSUMER_BATCH_SIZE: int = int(os.getenv("CONSUMER_BATCH_SIZE", "500"))
    CONSUMER_POLL_SECONDS: float = float(os.getenv("CONSUMER_POLL_SECONDS", "1.0"))
    RUN_BACKGROUND_WORKERS: bool = (
        os.getenv("RUN_BACKGROUND_WORKERS", "false").lower() == "true"
    )
    DISPATCH_INLINE: bool = os.getenv("DISPATCH_INLINE", "true").lower() == "true"

    # Pagination
    DEFAULT_PAGE_SIZE: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    MAX_PAGE_SIZE: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


@lru_cache()
def get_settings() -> Settings:
    """
    Return cached settings instance.

    The Settings object is created once and reused for all
    subsequent calls.
    """
    return Settings()
