"""
tests/test_providers.py -- The three auth provider strategies.

The delegated (clerk) provider talks to its backend through a requests
Session; these tests hand it a fake session that serves a JWKS document built
from a throwaway RSA key, so no network is involved.
"""

from __future__ import annotations

import time

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from auth.providers import AuthProvider, ClerkSessionClient, build_auth_provider
from auth.tokens import sign_token
from core.config import AuthConfig, AuthProviderKind, ClerkConfig, JWTConfig
from core.errors import ConfigError, InvalidSignature, ProviderError

from conftest import TEST_SECRET, local_auth_config

CLERK = ClerkConfig(publishable_key="pk_test_shortlink", secret_key="sk_test_shortlink")


def _rsa_key() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii")
    )
    return private_pem, public_pem


def _jwk(public_pem: str, kid: str) -> dict:
    entry = jwk.construct(public_pem, "RS256").to_dict()
    entry["kid"] = kid
    entry["use"] = "sig"
    return entry


class _FakeResponse:
    def __init__(self, payload: dict, status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> dict:
        return self._payload


class _FakeSession:
    """Stands in for requests.Session. Serves whatever JWKS is current."""

    def __init__(self, jwks: dict | None = None, error: Exception | None = None) -> None:
        self.jwks = jwks
        self.error = error
        self.calls: list[dict] = []
        self.closed = False

    def get(self, url: str, headers: dict | None = None, timeout: float | None = None) -> _FakeResponse:
        self.calls.append({"url": url, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return _FakeResponse(self.jwks or {})

    def close(self) -> None:
        self.closed = True


@pytest.fixture(scope="module")
def signing_key() -> tuple[str, str]:
    return _rsa_key()


@pytest.fixture
def session(signing_key) -> _FakeSession:
    _private_pem, public_pem = signing_key
    return _FakeSession({"keys": [_jwk(public_pem, "kid-1")]})


@pytest.fixture
def clerk_provider(session) -> AuthProvider:
    return build_auth_provider(AuthConfig(AuthProviderKind.DELEGATED, clerk=CLERK), http_session=session)


def _session_token(private_pem: str, kid: str = "kid-1", **claims) -> str:
    now = int(time.time())
    body = {"sub": "user_2abcdef", "iat": now, "exp": now + 300}
    body.update(claims)
    return jwt.encode(body, private_pem, algorithm="RS256", headers={"kid": kid})


class TestLocalProvider:
    def test_issue_and_authenticate(self) -> None:
        provider = build_auth_provider(local_auth_config())
        assert provider.kind is AuthProviderKind.LOCAL
        assert provider.can_issue_tokens
        assert not provider.provisions_users
        assert provider.authenticate(provider.issue_token("u-1")) == "u-1"

    def test_public_info(self) -> None:
        assert build_auth_provider(local_auth_config()).public_info() == {"auth_provider": "local"}

    def test_bad_pem_fails_at_build_time(self) -> None:
        config = AuthConfig(
            AuthProviderKind.LOCAL,
            jwt=JWTConfig("RS256", public_key="not a pem", private_key="also not a pem"),
        )
        with pytest.raises(ConfigError):
            build_auth_provider(config)


class TestExternalJwtProvider:
    def test_verifies_but_cannot_issue(self) -> None:
        provider = build_auth_provider(
            AuthConfig(AuthProviderKind.EXTERNAL_JWT, jwt=JWTConfig("HS256", secret_key=TEST_SECRET))
        )
        token = sign_token("ext-user", JWTConfig("HS256", secret_key=TEST_SECRET))
        assert provider.authenticate(token) == "ext-user"
        assert provider.provisions_users
        with pytest.raises(ConfigError, match="cannot issue tokens"):
            provider.issue_token("ext-user")

    def test_rs256_public_key_only(self, signing_key) -> None:
        private_pem, public_pem = signing_key
        provider = build_auth_provider(
            AuthConfig(AuthProviderKind.EXTERNAL_JWT, jwt=JWTConfig("RS256", public_key=public_pem))
        )
        token = sign_token("ext-rs", JWTConfig("RS256", public_key=public_pem, private_key=private_pem))
        assert provider.authenticate(token) == "ext-rs"


class TestDelegatedProvider:
    def test_signed_in_session(self, clerk_provider, signing_key, session) -> None:
        private_pem, _public_pem = signing_key
        assert clerk_provider.authenticate(_session_token(private_pem)) == "user_2abcdef"
        call = session.calls[0]
        assert call["url"] == "https://api.clerk.com/v1/jwks"
        assert call["headers"] == {"Authorization": "Bearer sk_test_shortlink"}
        assert call["timeout"] == CLERK.timeout_seconds

    def test_jwks_is_cached(self, clerk_provider, signing_key, session) -> None:
        private_pem, _public_pem = signing_key
        for _ in range(3):
            clerk_provider.authenticate(_session_token(private_pem))
        assert len(session.calls) == 1

    def test_unknown_kid_triggers_refresh(self, clerk_provider, signing_key, session) -> None:
        private_pem, _public_pem = signing_key
        clerk_provider.authenticate(_session_token(private_pem))

        rotated_private, rotated_public = _rsa_key()
        session.jwks = {"keys": [_jwk(rotated_public, "kid-2")]}
        assert clerk_provider.authenticate(_session_token(rotated_private, kid="kid-2")) == "user_2abcdef"
        assert len(session.calls) == 2

    def test_unknown_kid_refresh_is_rate_limited(self, signing_key, session) -> None:
        private_pem, _public_pem = signing_key
        now = [1000.0]
        client = ClerkSessionClient(CLERK, session=session, clock=lambda: now[0])
        assert client.authenticate(_session_token(private_pem)).signed_in
        assert len(session.calls) == 1

        forger, _unused = _rsa_key()
        for i in range(5):
            assert not client.authenticate(_session_token(forger, kid=f"bogus{i}")).signed_in
        assert len(session.calls) == 2

        now[0] += 61
        assert not client.authenticate(_session_token(forger, kid="bogus5")).signed_in
        assert len(session.calls) == 3

    def test_non_canonical_signature_skips_key_fetch(self, signing_key, session) -> None:
        private_pem, _public_pem = signing_key
        client = ClerkSessionClient(CLERK, session=session)
        header, payload, _signature = _session_token(private_pem).split(".")
        assert not client.authenticate(f"{header}.{payload}.abc=").signed_in
        assert session.calls == []

    def test_expired_session_is_not_signed_in(self, clerk_provider, signing_key) -> None:
        private_pem, _public_pem = signing_key
        token = _session_token(private_pem, exp=int(time.time()) - 60)
        with pytest.raises(InvalidSignature):
            clerk_provider.authenticate(token)

    def test_foreign_signature_is_not_signed_in(self, clerk_provider) -> None:
        other_private, _other_public = _rsa_key()
        with pytest.raises(InvalidSignature):
            clerk_provider.authenticate(_session_token(other_private))

    def test_garbage_token_is_not_signed_in(self, clerk_provider) -> None:
        with pytest.raises(InvalidSignature):
            clerk_provider.authenticate("garbage")

    def test_unreachable_provider(self, signing_key) -> None:
        private_pem, _public_pem = signing_key
        session = _FakeSession(error=requests.ConnectionError("connection refused"))
        provider = build_auth_provider(AuthConfig(AuthProviderKind.DELEGATED, clerk=CLERK), http_session=session)
        with pytest.raises(ProviderError):
            provider.authenticate(_session_token(private_pem))

    def test_malformed_jwks(self, signing_key) -> None:
        private_pem, _public_pem = signing_key
        client = ClerkSessionClient(CLERK, session=_FakeSession({"nope": True}))
        with pytest.raises(ProviderError, match="no signing keys"):
            client.authenticate(_session_token(private_pem))

    def test_public_info_and_capabilities(self, clerk_provider) -> None:
        assert clerk_provider.public_info() == {
            "auth_provider": "clerk",
            "clerk_publishable_key": "pk_test_shortlink",
        }
        assert clerk_provider.provisions_users
        assert not clerk_provider.can_issue_tokens
        with pytest.raises(ConfigError):
            clerk_provider.issue_token("user_2abcdef")

    def test_close_closes_session(self, clerk_provider, session) -> None:
        clerk_provider.close()
        assert session.closed
