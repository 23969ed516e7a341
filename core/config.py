"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for folio happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET). Type coercion and
      validation are built in. Dict and list fields are parsed from JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing JWT secrets
      with a warning; production mode refuses to start without them.

Security notes:
  [M6] JWT secrets shorter than 32 chars are rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), missing JWT secrets are a
       hard startup failure. A random per-process secret would invalidate
       every outstanding token on restart.

  [M8] Access and refresh secrets must differ. A shared secret would let a
       refresh token verify as an access token if the claim shapes overlap.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("folio.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'folio_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    # Version stamped into the `v` claim of newly issued tokens. Tokens
    # without `v` are verified against version 1.
    jwt_secret_version: int = 1
    # Older secrets still accepted for verification, e.g. {"1": "..."}.
    jwt_retired_access_secrets: dict[int, str] = {}
    jwt_retired_refresh_secrets: dict[int, str] = {}

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 7 * 24 * 60 * 60
    # The per-user session index outlives its members by this much.
    session_index_grace_seconds: int = 60 * 60

    # None means "secure unless DEBUG" -- resolved in the validator.
    secure_cookies: Optional[bool] = None
    cookie_samesite: Literal["lax", "strict"] = "lax"
    cookie_domain: Optional[str] = None

    # ------------------------------------------------------------------
    # Backing stores
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 5.0
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Passwords and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    lockout_threshold: int = 5
    lockout_seconds: int = 30 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    api_max_attempts: int = 100
    api_window_seconds: int = 60
    # Honour X-Forwarded-For / X-Real-IP. Disable when the app is exposed
    # directly, otherwise clients can pick their own rate-limit bucket.
    trust_proxy_headers: bool = True

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    protected_path_prefixes: list[str] = ["/admin", "/api/v1/admin"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6][M7][M8].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than 32 characters and identical
            access/refresh secrets.
        """
        for field in ("jwt_access_secret", "jwt_refresh_secret"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("WARNING: Using auto-generated %s. Tokens will not persist across restarts.", field.upper())
        if len(self.jwt_access_secret) < 32 or len(self.jwt_refresh_secret) < 32:
            raise ValueError("JWT secrets must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if self.jwt_secret_version < 1:
            raise ValueError("JWT_SECRET_VERSION must be >= 1.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
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
