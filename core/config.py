"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Implements the signing-secret startup contract.

Security notes:
  - In production (ENVIRONMENT=production) the process refuses to start
       while JWT_SECRET still equals the documented placeholder. The key is
       read once and never rotated in-process; rotating it invalidates every
       outstanding token.

  - Production secrets shorter than 32 characters are rejected. HS256
       signing relies on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

PLACEHOLDER_SECRET = "your-secret-key-change-in-production"  # nosec B105


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: str = "development"
    database_url: str = "sqlite:///./authcore.db"
    # Upper bound on a single request-facing operation. Routes wrap the
    # service call in asyncio.wait_for() with this value.
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_secret: str = PLACEHOLDER_SECRET
    jwt_access_token_minutes: int = Field(default=15, ge=1)
    jwt_refresh_token_days: int = Field(default=7, ge=1)

    # Single-use token lifetimes
    verification_token_hours: int = Field(default=24, ge=1)
    password_reset_token_minutes: int = Field(default=60, ge=1)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # bcrypt cost factor. gensalt() accepts 4..31; tests run at 4.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the signing-secret policy.

        Production: refuse to start with the placeholder or a short secret.
        Development: allow the placeholder, but say so loudly.
        """
        if self.is_production:
            if self.jwt_secret == PLACEHOLDER_SECRET:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "Set JWT_SECRET in your environment or .env file."
                )
            if len(self.jwt_secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters in production.")
        elif self.jwt_secret == PLACEHOLDER_SECRET:
            logger.warning("WARNING: Using placeholder JWT_SECRET. Do not run this configuration in production.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
