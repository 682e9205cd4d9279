"""Client-side billing configuration loaded from the environment."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BILLING_CLIENT_",
        case_sensitive=False,
        extra="ignore",
    )

    api_base_url: str = Field("http://localhost:8000", description="Base URL of the billing API")
    stripe_publishable_key: str = Field(
        "", description="Publishable key used by the hosted payment form", repr=False
    )
    return_url: str = Field(
        "http://localhost:3000/subscription",
        description="Where the hosted payment form redirects after an off-page step",
    )
    timeout: float = Field(10.0, description="HTTP timeout in seconds")


@lru_cache()
def get_client_settings() -> BillingClientSettings:
    """Return cached settings to avoid re-parsing environment variables."""

    return BillingClientSettings()


__all__ = ["BillingClientSettings", "get_client_settings"]
