"""Configuration for the billing service."""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings read from ``BILLING_SERVICE_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_SERVICE_",
        env_file=".env.dev",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "billing_service"
    debug: bool = False

    # Database
    database_url: str = "sqlite+pysqlite:///./billing.db"

    # Stripe
    stripe_secret_key: str = Field("", repr=False)
    stripe_api_version: str | None = None
    # Plan code -> Stripe price id, e.g. {"exec_monthly": "price_123"}
    price_ids: Dict[str, str] = Field(default_factory=dict)

    # Plans
    default_plan_code: str = "starter"

    # Session
    session_cookie_name: str = "session"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
