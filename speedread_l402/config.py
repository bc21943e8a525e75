"""Application settings loaded from environment variables.

Configuration is loaded from (highest priority first):
1. Environment variables (prefix: ``SPEEDREAD_``; the secret and node
   credentials also accept their bare names, e.g. ``MACAROON_SECRET``)
2. A ``.env`` file in the working directory
3. Defaults defined here
"""

from __future__ import annotations

import enum
import functools
import logging

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEV_SECRET = "speedread-l402-secret-change-in-production"
MIN_SECRET_LENGTH = 32


class Environment(str, enum.Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Top-level application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SPEEDREAD_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    environment: Environment = Environment.DEVELOPMENT

    macaroon_secret: str = Field(
        default=DEV_SECRET,
        validation_alias=AliasChoices(
            "macaroon_secret", "SPEEDREAD_MACAROON_SECRET", "MACAROON_SECRET"
        ),
        description="HMAC key for access tokens",
    )

    # Token lifetimes (seconds)
    access_token_ttl: int = 86400
    publish_token_ttl: int = 3600
    invoice_expiry: int = 3600

    upstream_timeout: float = Field(
        default=8.0,
        gt=0,
        description="Bound on every node / LNURL round-trip",
    )

    # Platform Lightning node (LND REST)
    lnd_rest_host: str = Field(
        default="",
        validation_alias=AliasChoices("lnd_rest_host", "SPEEDREAD_LND_REST_HOST", "LND_REST_HOST"),
    )
    lnd_macaroon_hex: str = Field(
        default="",
        validation_alias=AliasChoices(
            "lnd_macaroon_hex", "SPEEDREAD_LND_MACAROON_HEX", "LND_MACAROON_HEX"
        ),
    )

    # Document store (Supabase PostgREST); empty means in-memory
    supabase_url: str = ""
    supabase_key: str = ""

    app_url: str = "https://speedread.fit"
    max_content_size: int = 1_000_000
    max_tip_sats: int = 100_000
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_secret(self) -> "Settings":
        if self.environment is Environment.PRODUCTION:
            if self.macaroon_secret == DEV_SECRET:
                raise ValueError("macaroon_secret must be set in production")
            if len(self.macaroon_secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"macaroon_secret must be at least {MIN_SECRET_LENGTH} characters in production"
                )
        return self

    @property
    def uses_dev_secret(self) -> bool:
        return self.macaroon_secret == DEV_SECRET


@functools.lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded once."""
    settings = Settings()
    if settings.uses_dev_secret:
        logger.warning("Using the development token secret; set MACAROON_SECRET before deploying")
    return settings
