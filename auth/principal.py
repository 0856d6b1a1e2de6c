"""
auth/principal.py -- Turn an inbound request into a Principal, and check scopes.

Resolution order (first match wins):
  1. API key  -- "Authorization: Bearer osp_sk_..." or "X-API-Key: osp_sk_...".
     Found by display prefix, confirmed by argon2 hash. A presented key that
     does not match is anonymous AND reported (api_key_error) so a route can
     tell "bad key" from "no key".
  2. Bearer token -- handed to the active AuthProvider. Success yields a USER
     principal with no scope restriction. Any failure is swallowed and the
     request continues anonymously (optional authentication).
  3. Nothing -- ANONYMOUS, identified by client IP.

Client IP: first X-Forwarded-For entry, then X-Real-IP, then the transport
peer address.

Authorization: USER principals pass every scope check. SERVICE_KEY principals
must hold the scope. ANONYMOUS principals hold nothing.

authenticate_user() (local password login) lives here as well because it is
the only other place credentials become identities.

Layer rule: no imports from api/ or quota/. Starlette's Request is the only
web type touched, and only through its headers and client attributes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from starlette.requests import Request

from auth.hashing import hash_secret, matches
from auth.models import Principal, PrincipalKind, User
from auth.providers import AuthProvider
from auth.store import UserStore
from auth.tokens import api_key_display_prefix, is_api_key
from core.errors import AuthorizationError, CryptoError, InvalidSignature, ProviderError

logger = logging.getLogger("shortlink.auth")

# Timing equalization dummy hash [C1]. Computed once at import so the first
# login attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_secret("shortlink_timing_dummy")


# ---------------------------------------------------------------------------
# Client IP
# ---------------------------------------------------------------------------


def get_client_ip(request: Request) -> str:
    """Return the caller's IP, preferring proxy headers over the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _extract_credential(request: Request) -> str | None:
    """Return the raw credential from Authorization: Bearer or X-API-Key."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme == "Bearer" and value.strip():
        return value.strip()
    api_key = request.headers.get("X-API-Key", "").strip()
    return api_key or None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one request."""

    principal: Principal
    api_key_error: str | None = None


class PrincipalResolver:
    """Resolve requests against one UserStore and the active AuthProvider."""

    def __init__(self, user_store: UserStore, provider: AuthProvider) -> None:
        self.user_store = user_store
        self.provider = provider

    def resolve(self, request: Request) -> Resolution:
        client_ip = get_client_ip(request)
        credential = _extract_credential(request)
        if credential is None:
            return Resolution(Principal.anonymous(client_ip))
        if is_api_key(credential):
            return self._resolve_api_key(credential, client_ip)
        return Resolution(self._resolve_bearer(credential, client_ip))

    def _resolve_api_key(self, raw_key: str, client_ip: str) -> Resolution:
        for candidate in self.user_store.get_api_key_candidates(api_key_display_prefix(raw_key)):
            if not matches(raw_key, candidate.secret_hash):
                continue
            owner = self.user_store.get_by_id(candidate.owner_user_id)
            if owner is None or not owner.is_active:
                break
            return Resolution(Principal.for_api_key(candidate, client_ip))
        logger.debug("API key presented but not recognised")
        return Resolution(Principal.anonymous(client_ip), api_key_error="Invalid or expired API key")

    def _resolve_bearer(self, token: str, client_ip: str) -> Principal:
        try:
            user_id = self.provider.authenticate(token)
        except (InvalidSignature, ProviderError, CryptoError) as exc:
            # Optional authentication: a bad token is simply "not signed in".
            logger.debug("Bearer token rejected (%s): %s", type(exc).__name__, exc)
            return Principal.anonymous(client_ip)

        if self.provider.provisions_users:
            user = self.user_store.get_or_create_user(user_id)
        else:
            user = self.user_store.get_by_id(user_id)
        if user is None or not user.is_active:
            logger.debug("Verified token for unknown or inactive user")
            return Principal.anonymous(client_ip)
        return Principal.for_user(user.user_id, client_ip)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def authorize(principal: Principal, required_scope: str) -> bool:
    """Return True if principal may perform an operation needing required_scope."""
    if principal.kind is PrincipalKind.USER:
        return True
    if principal.kind is PrincipalKind.SERVICE_KEY:
        return required_scope in principal.scopes
    return False


def require_scope(principal: Principal, required_scope: str) -> None:
    """Raise AuthorizationError unless authorize() allows the operation."""
    if not authorize(principal, required_scope):
        raise AuthorizationError(required_scope)


# ---------------------------------------------------------------------------
# Local password login (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a local username/password login with timing equalization.

    Always runs argon2 whether or not the user exists, so response time does
    not reveal which usernames are registered:
    - Unknown username: argon2 runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: argon2 runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or not user.hashed_password:
        # Equalize timing -- do NOT return early before running argon2 [C1]
        matches(password, _DUMMY_HASH)
        return None
    if not matches(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
