"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for dirsync happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. directory_base_dn -> DIRECTORY_BASE_DN). Type coercion and
      validation are built in. list[str] fields are read as JSON arrays
      (e.g. DIRECTORY_CANDIDATE_HOSTS='["10.0.0.100", "192.168.56.100"]').

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic: dev mode generates a key with a warning, production mode refuses
      to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Session tokens are
  HMAC-signed with it -- a short key weakens every token the service issues.

  The directory admin password is a SecretStr so it never shows up in reprs,
  tracebacks or log lines that format the settings object.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
directory/ or sync/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dirsync.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'dirsync_identities.db'}"


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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Fixed validity window from issuance. Tokens are never refreshed in place.
    token_expire_seconds: int = 86400
    token_issuer: str = "library-directory-sync"

    # ------------------------------------------------------------------
    # Directory endpoint
    # ------------------------------------------------------------------

    directory_url: str = "ldap://localhost:389"
    directory_base_dn: str = "DC=example,DC=org"
    directory_admin_user: str = "administrator@example.org"
    directory_admin_password: SecretStr = SecretStr("")
    # NetBIOS short domain, used for the DOMAIN\user bind format
    directory_domain: str = ""
    # Appended to bare account names for the user-level bind (UPN form)
    directory_upn_suffix: str = ""

    # ------------------------------------------------------------------
    # Directory timeouts and paging
    # ------------------------------------------------------------------

    directory_probe_timeout: float = 5.0
    directory_connect_timeout: int = 20
    directory_receive_timeout: int = 30
    directory_page_size: int = 500

    # ------------------------------------------------------------------
    # Endpoint discovery
    # ------------------------------------------------------------------

    # Alternate endpoints probed in order when the configured one is
    # unreachable. Empty list disables discovery entirely.
    directory_candidate_hosts: list[str] = []
    directory_discovery_cooldown: int = 300

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    # Host headers accepted by TrustedHostMiddleware
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, unless a Settings instance is injected by the caller.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
