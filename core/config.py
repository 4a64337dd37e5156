"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates a SECRET_KEY with a warning,
      production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC digests of reset codes / verification tokens both rely on it.

  [M7] In production mode a missing SECRET_KEY is a hard startup failure.

  bcrypt_rounds below 12 is rejected -- the password store must never be
  configured weaker than the documented cost factor.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or mailer/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///sessionguard.db"
    app_base_url: str = "http://localhost:8000"
    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Trust X-Forwarded-For / X-Forwarded-Proto only from these proxy addresses.
    # Passed to uvicorn; the application itself never reads forwarding headers.
    proxy_headers: bool = False
    forwarded_allow_ips: str = "127.0.0.1"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 8 * 3600
    bcrypt_rounds: int = 12
    temp_password_length: int = 12
    # Single-session policy. The sweep endpoint may be called with another
    # value, but login always leaves exactly one active session.
    max_active_sessions: int = 1

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_code_ttl_minutes: int = 10
    verification_token_ttl_minutes: int = 15
    # 2 resends = 3 codes in total for one reset request
    max_reset_resends: int = 2
    # Wrong guesses against one reset request before its code is voided
    max_reset_code_failures: int = 5

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    reset_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Email (empty api key = log-only transport)
    # ------------------------------------------------------------------

    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_from: str = "SessionGuard <no-reply@localhost>"
    email_timeout_seconds: float = 15.0

    # ------------------------------------------------------------------
    # Bootstrap (used only by `main.py create-admin`)
    # ------------------------------------------------------------------

    first_admin_email: str = ""
    first_admin_name: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens and stored reset digests do not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_auth_policy(self) -> "Settings":
        """Reject password and reset settings weaker than the documented floor."""
        if self.bcrypt_rounds < 12:
            raise ValueError("BCRYPT_ROUNDS must be at least 12.")
        if self.temp_password_length < 12:
            raise ValueError("TEMP_PASSWORD_LENGTH must be at least 12.")
        if self.max_active_sessions < 1:
            raise ValueError("MAX_ACTIVE_SESSIONS must be at least 1.")
        if self.max_reset_code_failures < 1:
            raise ValueError("MAX_RESET_CODE_FAILURES must be at least 1.")
        if self.email_timeout_seconds <= 0:
            raise ValueError("EMAIL_TIMEOUT_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
