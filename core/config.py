"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the marketplace auth service happen here.
No module should call os.getenv() or os.environ.get() directly -- build a
Settings once at process start (get_settings()) and pass it down.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      instance is then handed to create_app(), TokenIssuer and AuthService
      explicitly; nothing below the app factory looks it up on its own.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. A missing or short SECRET_KEY is a hard
      startup failure.

Security notes:
  - SECRET_KEY shorter than 32 bytes is rejected outright. JWT signing
    relies on key entropy; a short key weakens every issued token.

  - There is no auto-generated fallback key. A random key would silently
    invalidate every access and refresh token on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("marketplace.config")

MIN_SECRET_KEY_BYTES = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Everything except SECRET_KEY has a default so Settings(secret_key=...) can
    be instantiated in test environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured"; the validator below
    # refuses to start in that case.
    secret_key: str = ""
    database_url: str = "sqlite:///marketplace_auth.db"

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_days: int = Field(default=30, gt=0)
    max_sessions_per_account: int = Field(default=5, gt=0)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, gt=0)
    lockout_minutes: int = Field(default=30, gt=0)

    # ------------------------------------------------------------------
    # Single-use secrets
    # ------------------------------------------------------------------

    email_verification_expire_hours: int = Field(default=24, gt=0)
    password_reset_expire_minutes: int = Field(default=10, gt=0)

    # ------------------------------------------------------------------
    # Outbound email (SMTP host empty = dev mode, mails are logged only)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "noreply@marketplace.local"
    email_from_name: str = "Asset Marketplace"
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP edge
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Refuse to start without a signing secret of at least 32 bytes."""
        if not self.secret_key:
            raise ValueError(
                "SECRET_KEY is required. Set SECRET_KEY in your environment or .env file "
                f"(at least {MIN_SECRET_KEY_BYTES} bytes)."
            )
        if len(self.secret_key.encode("utf-8")) < MIN_SECRET_KEY_BYTES:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_KEY_BYTES} bytes.")
        if self.debug:
            logger.warning("DEBUG mode enabled -- do not run this configuration in production")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Call it at process start (asgi.py, main.py) and inject the result; library
    code receives Settings as a constructor argument instead of calling this.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
