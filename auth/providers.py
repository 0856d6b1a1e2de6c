"""
auth/providers.py -- Auth provider strategy: local, external_jwt, delegated.

Exactly one provider is active per deployment (AuthConfig.provider). Bearer
token verification dispatches on that tag through _VERIFIERS, one handler per
variant. Adding a provider means adding an AuthProviderKind member and a
handler here; existing handlers are untouched.

  local         The server signs its own tokens (POST /login) and verifies
                them with the same JWTConfig.
  external_jwt  Tokens are minted elsewhere. The server holds only the
                verification key (HS256 secret or RS256 public key).
  clerk         Validation is delegated to a Clerk-compatible identity
                provider. The provider's signing keys are fetched from its
                backend API (GET {api_url}/jwks, authorized by the secret
                key) and cached; a token is "signed in" when it verifies
                against them, is unexpired, and names a subject. The core
                only ever sees SessionState(signed_in, user_id).

Every handler returns the verified subject or raises InvalidSignature (bad
token) / ProviderError (provider unreachable). The resolver maps both to an
anonymous principal under optional authentication.

Layer rule: no imports from api/ or quota/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import requests
from jose import ExpiredSignatureError, JWTError, jwt

from auth.tokens import check_key_material, check_signature_encoding, sign_token, verify_token
from core.config import AuthConfig, AuthProviderKind, ClerkConfig
from core.errors import ConfigError, InvalidSignature, ProviderError

logger = logging.getLogger("shortlink.auth.providers")

_JWKS_TTL_SECONDS = 60 * 60
_KID_REFRESH_COOLDOWN_SECONDS = 60


# ---------------------------------------------------------------------------
# Delegated provider client
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionState:
    signed_in: bool
    user_id: str | None = None


class ClerkSessionClient:
    """Verifies provider session tokens against the provider's published keys.

    The JWKS document is cached for an hour and refreshed early when a token
    names a key id the cache does not know (key rotation). Unknown-kid
    refreshes happen at most once per cooldown window; inside the window the
    cached keys are used and the token simply fails to verify. requests calls
    use the configured timeout so a slow provider cannot hang a request worker.
    """

    def __init__(
        self,
        config: ClerkConfig,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._jwks: dict | None = None
        self._fetched_at = 0.0
        self._kid_refreshed_at = float("-inf")

    def _fetch_jwks(self) -> dict:
        try:
            resp = self._session.get(
                f"{self._config.api_url}/jwks",
                headers={"Authorization": f"Bearer {self._config.secret_key}"},
                timeout=self._config.timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise ProviderError(f"identity provider unreachable: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("identity provider returned invalid JSON") from exc
        if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
            raise ProviderError("identity provider returned no signing keys")
        return data

    def _signing_keys(self, kid: str | None) -> dict:
        with self._lock:
            now = self._clock()
            stale = self._jwks is None or now - self._fetched_at > _JWKS_TTL_SECONDS
            unknown_kid = (
                kid is not None
                and self._jwks is not None
                and all(k.get("kid") != kid for k in self._jwks["keys"])
            )
            if unknown_kid and not stale:
                if now - self._kid_refreshed_at < _KID_REFRESH_COOLDOWN_SECONDS:
                    return self._jwks
                self._kid_refreshed_at = now
            if stale or unknown_kid:
                self._jwks = self._fetch_jwks()
                self._fetched_at = now
                logger.info("Refreshed identity provider signing keys (%d keys)", len(self._jwks["keys"]))
            return self._jwks

    def authenticate(self, token: str) -> SessionState:
        """Return the provider's view of the session carried by token."""
        try:
            check_signature_encoding(token)
            kid = jwt.get_unverified_header(token).get("kid")
        except (InvalidSignature, JWTError):
            return SessionState(signed_in=False)
        keys = self._signing_keys(kid)
        try:
            claims = jwt.decode(token, keys, algorithms=["RS256"], options={"verify_aud": False})
        except ExpiredSignatureError:
            return SessionState(signed_in=False)
        except JWTError:
            return SessionState(signed_in=False)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            return SessionState(signed_in=False)
        return SessionState(signed_in=True, user_id=subject)

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# Per-variant handlers
# ---------------------------------------------------------------------------

BearerVerifier = Callable[[str, AuthConfig, "ClerkSessionClient | None"], str]


def _verify_local(token: str, config: AuthConfig, client: ClerkSessionClient | None) -> str:
    return verify_token(token, config.jwt)


def _verify_external_jwt(token: str, config: AuthConfig, client: ClerkSessionClient | None) -> str:
    # Same codec, but config.jwt only ever holds the issuer's verification key.
    return verify_token(token, config.jwt)


def _verify_delegated(token: str, config: AuthConfig, client: ClerkSessionClient | None) -> str:
    if client is None:
        raise ConfigError("delegated provider selected but no session client configured")
    state = client.authenticate(token)
    if not state.signed_in or not state.user_id:
        raise InvalidSignature("identity provider reports the session is not signed in")
    return state.user_id


_VERIFIERS: dict[AuthProviderKind, BearerVerifier] = {
    AuthProviderKind.LOCAL: _verify_local,
    AuthProviderKind.EXTERNAL_JWT: _verify_external_jwt,
    AuthProviderKind.DELEGATED: _verify_delegated,
}


# ---------------------------------------------------------------------------
# Bound strategy
# ---------------------------------------------------------------------------


class AuthProvider:
    """The active provider bound to its configuration.

    Built once by build_auth_provider() at startup and stored on app.state.
    """

    def __init__(self, config: AuthConfig, session_client: ClerkSessionClient | None = None) -> None:
        self.config = config
        self._session_client = session_client

    @property
    def kind(self) -> AuthProviderKind:
        return self.config.provider

    @property
    def provisions_users(self) -> bool:
        """External subjects get a local user row on first sight."""
        return self.kind in (AuthProviderKind.EXTERNAL_JWT, AuthProviderKind.DELEGATED)

    @property
    def can_issue_tokens(self) -> bool:
        return self.kind is AuthProviderKind.LOCAL

    def authenticate(self, token: str) -> str:
        """Verify a bearer token and return its subject id."""
        return _VERIFIERS[self.kind](token, self.config, self._session_client)

    def issue_token(self, user_id: str) -> str:
        """Sign a token for user_id. Only the local provider owns a signing key."""
        if not self.can_issue_tokens:
            raise ConfigError(f"auth_provider {self.kind.value!r} cannot issue tokens")
        return sign_token(user_id, self.config.jwt)

    def public_info(self) -> dict:
        """Non-secret provider details for GET /auth-provider."""
        info: dict = {"auth_provider": self.kind.value}
        if self.kind is AuthProviderKind.DELEGATED and self.config.clerk is not None:
            info["clerk_publishable_key"] = self.config.clerk.publishable_key
        return info

    def close(self) -> None:
        if self._session_client is not None:
            self._session_client.close()


def build_auth_provider(config: AuthConfig, http_session: requests.Session | None = None) -> AuthProvider:
    """Validate key material and return the bound provider. Raises ConfigError."""
    if config.provider is AuthProviderKind.DELEGATED:
        if config.clerk is None:
            raise ConfigError("clerk configuration is required when auth_provider is 'clerk'")
        provider = AuthProvider(config, ClerkSessionClient(config.clerk, session=http_session))
    else:
        if config.jwt is None:
            raise ConfigError(f"JWT config is required when auth_provider is {config.provider.value!r}")
        check_key_material(config.jwt, signing=config.provider is AuthProviderKind.LOCAL)
        provider = AuthProvider(config)
    logger.info("Auth provider initialized: %s", config.provider.value)
    return provider
