"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CredGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. password_expiry_days -> PASSWORD_EXPIRY_DAYS). Type coercion and
      validation are built in. List and dict fields are read as JSON, e.g.
      PRINCIPAL_TYPES='{"user": "users", "staff": "staff_members"}'.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Used for the DEBUG-conditional SECRET_KEY logic and for the
      principal-type mapping (the default key must be one of the mapped keys).

Configuration errors fail fast: an invalid Settings raises at construction
(startup), never at request time. ConfigurationError covers the wiring errors
that can only be detected after settings load (an unknown principal-type key
requested at runtime, an exempt route name the app does not define).

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, ledger/, or security/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'credguard.db'}"

# Route names the enforcement gate never blocks. The verification and password
# routes must be reachable while a credential is stale, otherwise the principal
# could never fix it (infinite redirect loop).
DEFAULT_EXEMPT_ROUTES: list[str] = [
    "verification.notice",
    "verification.verify",
    "verification.send",
    "password.request",
    "password.email",
    "password.reset",
    "password.update",
    "logout",
    "login",
    "login.form",
    "api.login",
    "api.logout",
    "api.password.change",
    "health",
]


# Recovery routes every exempt list must keep, so a stale principal can always
# reach the pages that fix the credential or end the session.
REQUIRED_EXEMPT_ROUTES: tuple[str, ...] = (
    "verification.notice",
    "verification.verify",
    "verification.send",
    "password.request",
    "password.email",
    "password.reset",
    "password.update",
    "logout",
)


class ConfigurationError(ValueError):
    """Raised when wiring does not match configuration (unknown key, missing route)."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model validators enforce
    production-safety and consistency rules at startup.
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
    # Used to build the links placed in verification / reset notifications.
    app_base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    verification_token_expire_seconds: int = 3600
    password_reset_token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Credential expiry policy
    # ------------------------------------------------------------------

    verification_expiry_days: int = Field(default=30, gt=0)
    password_expiry_days: int = Field(default=30, gt=0)
    redirect_route: str = "verification.notice"
    exempt_routes: list[str] = Field(default_factory=lambda: list(DEFAULT_EXEMPT_ROUTES))

    # Logical principal-type key -> table name. One store per entry.
    principal_types: dict[str, str] = Field(default_factory=lambda: {"user": "users"})
    default_principal_type: str = "user"

    # ------------------------------------------------------------------
    # Notifications (empty URL means notifications are only logged)
    # ------------------------------------------------------------------

    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and issued tokens will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_principal_types(self) -> "Settings":
        """The default principal type must be one of the configured keys."""
        if not self.principal_types:
            raise ValueError("PRINCIPAL_TYPES must map at least one key to a table name.")
        if self.default_principal_type not in self.principal_types:
            raise ValueError(
                f"DEFAULT_PRINCIPAL_TYPE {self.default_principal_type!r} is not one of "
                f"{sorted(self.principal_types)!r}."
            )
        tables = list(self.principal_types.values())
        if len(set(tables)) != len(tables):
            raise ValueError("PRINCIPAL_TYPES must map each key to a distinct table name.")
        return self

    @model_validator(mode="after")
    def validate_redirect_route(self) -> "Settings":
        """The fallback route must itself be exempt or the redirect would loop."""
        if self.redirect_route not in self.exempt_routes:
            raise ValueError(f"REDIRECT_ROUTE {self.redirect_route!r} must be listed in EXEMPT_ROUTES.")
        return self

    @model_validator(mode="after")
    def validate_required_exempt_routes(self) -> "Settings":
        """EXEMPT_ROUTES may add names but never drop a recovery route."""
        missing = [name for name in REQUIRED_EXEMPT_ROUTES if name not in self.exempt_routes]
        if missing:
            raise ValueError(f"EXEMPT_ROUTES is missing required recovery route(s): {missing!r}.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
