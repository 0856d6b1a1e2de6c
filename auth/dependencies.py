"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and scopes.

Credentials are checked in priority order by PrincipalResolver:
  1. API key (Authorization: Bearer osp_sk_... or X-API-Key header).
  2. Authorization: Bearer <token> -- verified by the active auth provider.
  3. Nothing -- anonymous, keyed by client IP.

get_principal() is the soft variant (anonymous on failure, never raises for
bad credentials). get_current_principal() wraps it and raises HTTP 401.
require_scope() wraps that and raises AuthorizationError (-> 403) when a
service key lacks the scope. require_user() rejects service keys outright for
account-management routes.

The resolution is cached on request.state so a route that depends on several
of these helpers pays for argon2/JWT verification once.

Layer rule: no imports from api/ or quota/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import Principal, PrincipalKind, User
from auth.principal import PrincipalResolver, Resolution, require_scope as check_scope
from auth.store import UserStore


def get_resolution(request: Request) -> Resolution:
    """Resolve the request's credential once and memoize it on request.state."""
    cached = getattr(request.state, "resolution", None)
    if cached is not None:
        return cached
    resolver: PrincipalResolver = request.app.state.resolver
    resolution = resolver.resolve(request)
    request.state.resolution = resolution
    return resolution


def get_principal(request: Request) -> Principal:
    """Optional authentication. Returns an anonymous principal on any failure."""
    return get_resolution(request).principal


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is anonymous.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    resolution = get_resolution(request)
    if not resolution.principal.is_authenticated:
        message = resolution.api_key_error or "Authentication required."
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": message},
        )
    return resolution.principal


def require_scope(scope: str) -> Callable[[Request], Principal]:
    """Dependency factory: authenticated principal that is allowed `scope`.

    Use as:
        @router.get("/short-urls", dependencies=[Depends(require_scope("read_urls"))])
    """

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        check_scope(principal, scope)
        return principal

    dependency.__name__ = f"require_scope_{scope}"
    return dependency


def require_user(request: Request, principal: Principal = Depends(get_current_principal)) -> User:
    """Require an interactive user. Service keys get HTTP 403.

    API keys must not be able to mint or delete other API keys -- a
    read-only key could otherwise escalate itself.
    """
    if principal.kind is not PrincipalKind.USER:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "This operation requires a user session, not an API key."},
        )
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(principal.identifier)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def get_account_owner(request: Request, principal: Principal = Depends(get_current_principal)) -> User:
    """Return the user behind a USER or SERVICE_KEY principal."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(principal.user_id) if principal.user_id else None
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return user


def require_admin(request: Request) -> None:
    """Require the operator password as a Bearer token. Raises HTTP 401 otherwise.

    With no admin password configured the admin surface does not exist: 404.
    Compared with hmac.compare_digest so the check leaks nothing through timing.
    """
    expected: str = getattr(request.app.state, "admin_password", "")
    if not expected:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Not found."},
        )
    scheme, _, provided = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not provided:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Admin credentials required."},
        )
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Invalid admin credentials."},
        )
