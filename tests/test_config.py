"""
tests/test_config.py -- Startup validation of the auth configuration.

Covers:
  - AuthConfig: each provider's required key material, external_jwt never
    holding a private key, unsupported algorithms
  - parse_provider: empty and unknown names
  - Settings: fail-fast validator, DEBUG secret generation, [M6] minimum
    secret length, retention floors, AuthConfig construction
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import (
    AuthConfig,
    AuthProviderKind,
    ClerkConfig,
    JWTConfig,
    Settings,
    parse_provider,
)
from core.errors import ConfigError

SECRET = "x" * 32


def _settings(**overrides) -> Settings:
    """Settings with every auth field pinned so the ambient test env does not leak in."""
    values = {
        "debug": False,
        "auth_provider": "local",
        "jwt_algorithm": "HS256",
        "jwt_secret_key": SECRET,
        "jwt_public_key": "",
        "jwt_private_key": "",
        "clerk_publishable_key": "",
        "clerk_secret_key": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestParseProvider:
    def test_known_names(self) -> None:
        assert parse_provider("local") is AuthProviderKind.LOCAL
        assert parse_provider("external_jwt") is AuthProviderKind.EXTERNAL_JWT
        assert parse_provider("clerk") is AuthProviderKind.DELEGATED
        assert parse_provider(" Local ") is AuthProviderKind.LOCAL

    def test_empty_is_required_error(self) -> None:
        with pytest.raises(ConfigError, match="auth_provider is required"):
            parse_provider("")

    def test_unknown_is_invalid(self) -> None:
        with pytest.raises(ConfigError, match="invalid auth_provider"):
            parse_provider("oauth")


class TestAuthConfig:
    def test_local_hs256_ok(self) -> None:
        cfg = AuthConfig(AuthProviderKind.LOCAL, jwt=JWTConfig("HS256", secret_key=SECRET))
        assert cfg.provider is AuthProviderKind.LOCAL

    def test_jwt_config_required(self) -> None:
        with pytest.raises(ConfigError, match="JWT config is required"):
            AuthConfig(AuthProviderKind.LOCAL)
        with pytest.raises(ConfigError, match="JWT config is required"):
            AuthConfig(AuthProviderKind.EXTERNAL_JWT)

    def test_hs256_needs_secret(self) -> None:
        with pytest.raises(ConfigError, match="secret_key is required"):
            AuthConfig(AuthProviderKind.LOCAL, jwt=JWTConfig("HS256"))

    def test_local_rs256_needs_both_keys(self) -> None:
        with pytest.raises(ConfigError, match="public_key is required"):
            AuthConfig(AuthProviderKind.LOCAL, jwt=JWTConfig("RS256", private_key="pem"))
        with pytest.raises(ConfigError, match="private_key is required"):
            AuthConfig(AuthProviderKind.LOCAL, jwt=JWTConfig("RS256", public_key="pem"))

    def test_external_rs256_needs_only_public_key(self) -> None:
        cfg = AuthConfig(AuthProviderKind.EXTERNAL_JWT, jwt=JWTConfig("RS256", public_key="pem"))
        assert cfg.jwt is not None and cfg.jwt.public_key == "pem"

    def test_external_rejects_private_key(self) -> None:
        with pytest.raises(ConfigError, match="private_key must not be configured"):
            AuthConfig(
                AuthProviderKind.EXTERNAL_JWT,
                jwt=JWTConfig("RS256", public_key="pem", private_key="pem"),
            )

    def test_unsupported_algorithm(self) -> None:
        with pytest.raises(ConfigError, match="unsupported JWT algorithm"):
            AuthConfig(AuthProviderKind.LOCAL, jwt=JWTConfig("ES256", secret_key=SECRET))

    def test_clerk_needs_both_keys(self) -> None:
        with pytest.raises(ConfigError):
            AuthConfig(AuthProviderKind.DELEGATED)
        with pytest.raises(ConfigError, match="secret_key"):
            AuthConfig(AuthProviderKind.DELEGATED, clerk=ClerkConfig(publishable_key="pk_test", secret_key=""))
        cfg = AuthConfig(AuthProviderKind.DELEGATED, clerk=ClerkConfig(publishable_key="pk_test", secret_key="sk_test"))
        assert cfg.jwt is None

    def test_repr_hides_key_material(self) -> None:
        assert SECRET not in repr(JWTConfig("HS256", secret_key=SECRET))
        assert "sk_live_secret" not in repr(ClerkConfig(publishable_key="pk", secret_key="sk_live_secret"))


class TestSettings:
    def test_valid_local_settings_build_auth_config(self) -> None:
        cfg = _settings().auth_config()
        assert cfg.provider is AuthProviderKind.LOCAL
        assert cfg.jwt is not None and cfg.jwt.algorithm == "HS256"

    def test_missing_provider_fails_fast(self) -> None:
        with pytest.raises(ValidationError, match="auth_provider is required"):
            _settings(auth_provider="")

    def test_invalid_provider_fails_fast(self) -> None:
        with pytest.raises(ValidationError, match="invalid auth_provider"):
            _settings(auth_provider="saml")

    def test_production_local_without_secret_fails(self) -> None:
        with pytest.raises(ValidationError, match="JWT_SECRET_KEY is required"):
            _settings(jwt_secret_key="")

    def test_debug_local_without_secret_generates_one(self) -> None:
        settings = _settings(debug=True, jwt_secret_key="")
        assert len(settings.jwt_secret_key) >= 32

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            _settings(jwt_secret_key="too-short")

    def test_lowercase_algorithm_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            _settings(jwt_algorithm="hs256", jwt_secret_key="short")

    def test_lowercase_algorithm_is_normalized(self) -> None:
        settings = _settings(jwt_algorithm=" hs256 ")
        assert settings.jwt_algorithm == "HS256"
        assert settings.auth_config().jwt.algorithm == "HS256"

    def test_debug_lowercase_algorithm_generates_secret(self) -> None:
        settings = _settings(debug=True, jwt_algorithm="hs256", jwt_secret_key="")
        assert len(settings.jwt_secret_key) >= 32

    def test_external_jwt_without_algorithm_rejected(self) -> None:
        with pytest.raises(ValidationError, match="JWT config is required"):
            _settings(auth_provider="external_jwt", jwt_algorithm="", jwt_secret_key="")

    def test_clerk_settings(self) -> None:
        settings = _settings(
            auth_provider="clerk",
            jwt_algorithm="",
            jwt_secret_key="",
            clerk_publishable_key="pk_test_abc",
            clerk_secret_key="sk_test_abc",
        )
        cfg = settings.auth_config()
        assert cfg.provider is AuthProviderKind.DELEGATED
        assert cfg.clerk is not None and cfg.clerk.publishable_key == "pk_test_abc"

    def test_clerk_without_keys_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _settings(auth_provider="clerk", jwt_algorithm="", jwt_secret_key="")

    def test_retention_floors(self) -> None:
        with pytest.raises(ValidationError, match="RATE_LIMIT_RETENTION_HOURS"):
            _settings(rate_limit_retention_hours=0)
        with pytest.raises(ValidationError, match="MONTHLY_LIMIT_RETENTION_DAYS"):
            _settings(monthly_limit_retention_days=31)

    def test_quota_defaults(self) -> None:
        settings = _settings()
        assert settings.anonymous_hourly_limit == 5
        assert settings.anonymous_monthly_link_limit == 1000
        assert settings.login_rate_limit
