"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- the app factory and the CLI call get_settings()
once and hand the resulting immutable values to every component that needs
them.

Two layers:
  Settings (BaseSettings): flat, env-facing. Field names map to env var names
      (e.g. jwt_secret_key -> JWT_SECRET_KEY). Owns environment policy such as
      the DEBUG auto-generated signing secret and the minimum secret length.

  AuthConfig / JWTConfig / ClerkConfig (frozen dataclasses): the structural
      auth configuration. Constructed once by Settings.auth_config() and passed
      explicitly to the token codec, the provider strategy, and the resolver.
      __post_init__ validates that the selected provider has the key material
      it needs, so a bad deployment fails at startup rather than on the first
      request.

Security notes:
  [M6] HS256 secrets shorter than 32 chars are rejected. Token signing relies
       on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a local HS256 deployment
       without JWT_SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or quota/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

logger = logging.getLogger("shortlink.config")

SUPPORTED_ALGORITHMS = ("HS256", "RS256")

_MIN_SECRET_LENGTH = 32


class AuthProviderKind(str, Enum):
    """Closed set of token validation modes. Exactly one is active per deployment."""

    LOCAL = "local"
    EXTERNAL_JWT = "external_jwt"
    DELEGATED = "clerk"


def parse_provider(value: str) -> AuthProviderKind:
    """Map a configured provider name onto AuthProviderKind, raising ConfigError."""
    if not value:
        raise ConfigError("auth_provider is required (one of: local, external_jwt, clerk)")
    try:
        return AuthProviderKind(value.strip().lower())
    except ValueError:
        raise ConfigError(f"invalid auth_provider: {value!r} (expected local, external_jwt or clerk)") from None


# ---------------------------------------------------------------------------
# Immutable auth configuration values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JWTConfig:
    """Token signing/verification material.

    HS256 uses secret_key for both directions. RS256 verifies with public_key
    and signs with private_key; both are PEM text.
    """

    algorithm: str
    secret_key: str = ""
    public_key: str = ""
    private_key: str = ""

    def __repr__(self) -> str:
        # Key material must never end up in logs or tracebacks.
        return f"JWTConfig(algorithm={self.algorithm!r})"


@dataclass(frozen=True)
class ClerkConfig:
    """Delegated identity provider credentials (Clerk-compatible backend API)."""

    publishable_key: str
    secret_key: str
    api_url: str = "https://api.clerk.com/v1"
    timeout_seconds: float = 5.0

    def __repr__(self) -> str:
        return f"ClerkConfig(publishable_key={self.publishable_key!r}, api_url={self.api_url!r})"


@dataclass(frozen=True)
class AuthConfig:
    """The one auth configuration value shared by every component."""

    provider: AuthProviderKind
    jwt: JWTConfig | None = None
    clerk: ClerkConfig | None = None

    def __post_init__(self) -> None:
        if self.provider is AuthProviderKind.DELEGATED:
            _validate_clerk(self.clerk)
            return
        if self.jwt is None or not self.jwt.algorithm:
            raise ConfigError(f"JWT config is required when auth_provider is {self.provider.value!r}")
        _validate_jwt(self.jwt, signing=self.provider is AuthProviderKind.LOCAL)


def _validate_jwt(jwt: JWTConfig, signing: bool) -> None:
    """Check that the key material required by the algorithm and mode is present.

    signing=True (local mode) needs both halves of an RS256 pair; verification-
    only mode (external_jwt) must not hold a private key at all.
    """
    if jwt.algorithm not in SUPPORTED_ALGORITHMS:
        raise ConfigError(f"unsupported JWT algorithm: {jwt.algorithm!r} (supported: HS256, RS256)")

    if jwt.algorithm == "HS256":
        if not jwt.secret_key:
            raise ConfigError("secret_key is required for HS256")
        return

    if not jwt.public_key:
        raise ConfigError("public_key is required for RS256")
    if signing and not jwt.private_key:
        raise ConfigError("private_key is required for RS256 in local mode")
    if not signing and jwt.private_key:
        raise ConfigError("private_key must not be configured for external_jwt (verification-only mode)")


def _validate_clerk(clerk: ClerkConfig | None) -> None:
    if clerk is None or not clerk.publishable_key:
        raise ConfigError("clerk publishable_key is required when auth_provider is 'clerk'")
    if not clerk.secret_key:
        raise ConfigError("clerk secret_key is required when auth_provider is 'clerk'")
    if clerk.timeout_seconds <= 0:
        raise ConfigError("clerk timeout_seconds must be positive")


# ---------------------------------------------------------------------------
# Environment-facing settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults except the auth provider selection, which has an
    empty-string sentinel that the validator rejects. Tests set AUTH_PROVIDER
    and DEBUG in conftest before anything calls get_settings().
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
    # Empty string means "use each store's package-local SQLite file".
    database_url: str = ""

    trusted_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Auth provider
    # ------------------------------------------------------------------

    auth_provider: str = ""

    jwt_algorithm: str = ""
    jwt_secret_key: str = ""
    jwt_public_key: str = ""
    jwt_private_key: str = ""

    clerk_publishable_key: str = ""
    clerk_secret_key: str = ""
    clerk_api_url: str = "https://api.clerk.com/v1"
    clerk_timeout_seconds: float = 5.0

    # Empty string disables the /__admin routes entirely.
    admin_password: str = ""

    # ------------------------------------------------------------------
    # Rate limiting and quotas
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    anonymous_hourly_limit: int = 5
    anonymous_monthly_link_limit: int = 1000

    rate_limit_retention_hours: int = 24
    monthly_limit_retention_days: int = 93
    quota_cleanup_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("jwt_algorithm")
    @classmethod
    def normalize_algorithm(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def validate_auth(self) -> "Settings":
        """Fail fast on auth misconfiguration [M6][M7].

        Dev mode (DEBUG=true): a local HS256 deployment with no secret gets a
            random one with a warning. Tokens will not survive restart.

        Production mode: the same situation is a startup failure.

        Finally build AuthConfig once so structural errors (missing PEMs,
        unsupported algorithm, missing Clerk keys) surface here too.
        """
        provider = parse_provider(self.auth_provider)
        if provider is AuthProviderKind.LOCAL and self.jwt_algorithm == "HS256" and not self.jwt_secret_key:
            if not self.debug:
                raise ConfigError(
                    "JWT_SECRET_KEY is required in production mode. "
                    "Set JWT_SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            self.jwt_secret_key = secrets.token_hex(32)
            logger.warning("WARNING: Using auto-generated JWT_SECRET_KEY. Tokens will not persist across restarts.")
        if self.jwt_algorithm == "HS256" and self.jwt_secret_key and len(self.jwt_secret_key) < _MIN_SECRET_LENGTH:
            raise ConfigError(f"JWT_SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.rate_limit_retention_hours < 1:
            raise ConfigError("RATE_LIMIT_RETENTION_HOURS must be at least 1 so the current window survives cleanup.")
        if self.monthly_limit_retention_days < 32:
            raise ConfigError(
                "MONTHLY_LIMIT_RETENTION_DAYS must be at least 32 so the current month survives cleanup."
            )
        self.auth_config()
        return self

    def auth_config(self) -> AuthConfig:
        """Build the immutable AuthConfig for this deployment."""
        provider = parse_provider(self.auth_provider)
        jwt = None
        if self.jwt_algorithm:
            jwt = JWTConfig(
                algorithm=self.jwt_algorithm,
                secret_key=self.jwt_secret_key,
                public_key=self.jwt_public_key,
                private_key=self.jwt_private_key,
            )
        clerk = None
        if self.clerk_publishable_key or self.clerk_secret_key:
            clerk = ClerkConfig(
                publishable_key=self.clerk_publishable_key,
                secret_key=self.clerk_secret_key,
                api_url=self.clerk_api_url.rstrip("/"),
                timeout_seconds=self.clerk_timeout_seconds,
            )
        return AuthConfig(provider=provider, jwt=jwt, clerk=clerk)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Only the app factory (api/main.py) and the CLI (main.py) call this.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
