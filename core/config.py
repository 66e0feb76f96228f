"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Validiant happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      application lifespan and the test fixtures call it; every component
      receives its values through its constructor.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates signing keys with a
      warning; production mode refuses to start without them.

Security notes:
  - Signing keys shorter than 32 chars are rejected outright. HMAC-SHA256
       and JWT signing both rely on key entropy -- a short key weakens both.

  - In production mode (DEBUG not set or false), a missing SECRET_KEY or
       REFRESH_SECRET_KEY is a hard startup failure.

  Token lifetimes: one canonical policy -- 15 minute access tokens, 7 day
       refresh tokens, 24 hour sessions. All three are configurable, none are
       hardcoded in the flows.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("validiant.config")


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    refresh_secret_key: str = ""

    database_url: str = "sqlite:///./validiant_auth.db"
    redis_url: str = "redis://localhost:6379/0"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    jwt_issuer: str = "validiant-api"
    jwt_audience: str = "validiant-client"
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    session_ttl_seconds: int = 24 * 3600

    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_reset_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Per-IP, enforced by slowapi on the public auth routes.
    login_rate_limit: str = "10/minute"
    # Per-account, enforced through the cache counter. Fails open.
    login_max_attempts: int = 5
    login_attempt_window_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    github_redirect_uri: str = ""
    oauth_state_ttl_seconds: int = 600
    oauth_http_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # WebAuthn / passkeys
    # ------------------------------------------------------------------

    webauthn_rp_id: str = "localhost"
    webauthn_rp_name: str = "Validiant"
    webauthn_origin: str = "http://localhost:3000"
    webauthn_user_verification: Literal["required", "preferred", "discouraged"] = "preferred"
    webauthn_timeout_ms: int = 60000
    webauthn_challenge_ttl_seconds: int = 600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_keys(self) -> "Settings":
        """Enforce the signing key policy.

        Dev mode (DEBUG=true): auto-generate random keys with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            key is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        for field in ("secret_key", "refresh_secret_key"):
            value = getattr(self, field)
            if not value:
                if self.debug:
                    value = secrets.token_hex(32)
                    setattr(self, field, value)
                    logger.warning(
                        "Using auto-generated %s. Sessions will not persist across restarts.", field.upper()
                    )
                else:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(value) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        if self.bcrypt_rounds < 4 or (not self.debug and self.bcrypt_rounds < 10):
            raise ValueError("BCRYPT_ROUNDS must be at least 10 in production mode.")
        return self

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret and self.google_redirect_uri)

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret and self.github_redirect_uri)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
