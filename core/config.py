"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccessGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing signing secrets with a warning;
      production mode refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.

  [M7] Access and refresh tokens are signed with two different secrets. A
       leaked access secret must not let an attacker mint refresh tokens, so
       configuring the same value for both is a startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accessgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'accessgate.db'}"


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

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    reset_token_expire_seconds: int = 3600
    bcrypt_rounds: int = 12

    # Echo the password-reset token in the forgot-password response. Only for
    # local development where no mail relay is configured.
    expose_reset_token: bool = False

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    default_role_name: str = "user"
    super_role_name: str = "super-admin"

    # Public registration may name its own role_id. Any role can be chosen,
    # super-admin included; set false to always assign default_role_name.
    allow_register_role_id: bool = True

    # Optional initial super-admin, created on startup when both are set.
    admin_email: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_retention_days: int = 90

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:3001"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    forgot_password_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject
            identical access/refresh secrets.
        """
        for field_name in ("access_token_secret", "refresh_token_secret"):
            if getattr(self, field_name):
                continue
            if self.debug:
                setattr(self, field_name, secrets.token_hex(32))
                logger.warning(
                    "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                    field_name.upper(),
                )
            else:
                raise ValueError(
                    f"{field_name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.access_token_secret) < 32 or len(self.refresh_token_secret) < 32:
            raise ValueError("Token secrets must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
