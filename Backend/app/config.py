# app/config.py
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Backend/app/config.py -> parent = Backend
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- Feed discovery ----
    FEED_URL: Optional[str] = None
    USER_AGENT: str = "newsletter-feed-mailer/1.0"
    FETCH_TIMEOUT_MS: int = Field(default=60000, gt=0)

    # ---- Batching and pacing ----
    BATCH_SIZE: int = Field(default=100, ge=1)
    BATCH_WAIT_MINUTES: int = Field(default=5, ge=0)
    MAX_POSTS_PER_RUN: int = Field(default=1, ge=1)

    # ---- Email ----
    EMAIL_PROVIDER: Literal["smtp", "brevo"] = "smtp"
    EMAIL_FROM_NAME: str = "Newsletter"
    EMAIL_FROM_ADDRESS: Optional[str] = None
    EMAIL_REPLY_TO: Optional[str] = None
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    BREVO_API_KEY: Optional[str] = None

    # ---- Newsletter content ----
    UNSUBSCRIBE_URL: str = ""
    SITE_URL: str = ""
    SITE_OWNER: str = ""

    # ---- Durable store ----
    KV_BACKEND: Literal["memory", "postgres"] = "memory"
    DATABASE_URL: Optional[str] = None
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    DB_POOL_MAX_SIZE: int = Field(default=4, ge=1)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=30000, gt=0)
    DB_QUERY_TIMEOUT_MS: int = Field(default=30000, gt=0)

    # ---- Key prefixes (always end with ':') ----
    PREFIX_SUBSCRIBER: str = "subscriber:"
    PREFIX_EMAIL_QUEUE: str = "email-queue:"
    PREFIX_NEWSLETTER_SENT: str = "newsletter-sent:"
    PREFIX_NEWSLETTER_SENT_URL: str = "newsletter-sent-url:"
    PREFIX_DEAD_LETTER: str = "dlq:"

    # ---- Retention / hardening ----
    DLQ_TTL_SECONDS: int = 7 * 24 * 60 * 60
    RUN_LEASE_SECONDS: int = 0  # 0 disables the run lease

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "PREFIX_SUBSCRIBER",
        "PREFIX_EMAIL_QUEUE",
        "PREFIX_NEWSLETTER_SENT",
        "PREFIX_NEWSLETTER_SENT_URL",
        "PREFIX_DEAD_LETTER",
    )
    @classmethod
    def _with_colon(cls, value: str) -> str:
        value = str(value or "")
        return value if value.endswith(":") else value + ":"

    @property
    def fetch_timeout_s(self) -> float:
        return self.FETCH_TIMEOUT_MS / 1000


def get_settings() -> Settings:
    """
    Build a fresh Settings instance for one invocation.
    """
    return Settings()


def require_database_url(settings: Settings) -> str:
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL is required when KV_BACKEND=postgres "
            f"(tried loading from: {ENV_FILE})."
        )
    return settings.DATABASE_URL
