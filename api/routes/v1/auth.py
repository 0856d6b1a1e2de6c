"""
api/routes/v1/auth.py -- Login, provider discovery, and account status endpoints.

Routes:
  GET  /api/v1/auth-provider   -- which auth provider is active (public)
  POST /api/v1/login           -- password login; returns a bearer token (local provider only)
  GET  /api/v1/me              -- current account, plan, and quota usage (requires auth)

Security:
  [H2] POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.
  GET /auth-provider never exposes the delegated provider's secret key.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import AuthProviderResponse, LoginRequest, LoginResponse, MeResponse, QuotaStatusResponse
from auth.dependencies import get_account_owner, get_current_principal
from auth.models import Principal, User
from auth.principal import authenticate_user
from auth.providers import AuthProvider
from auth.store import UserStore
from quota.dependencies import quota_subject
from quota.plans import get_monthly_link_limit_for_plan, get_rate_limit_for_plan
from quota.store import QuotaLedger

# Auth policy:
# - GET  /api/v1/auth-provider:  public -- the dashboard calls this to pick a login flow
# - POST /api/v1/login:          public -- login endpoint must be unauthenticated
# - GET  /api/v1/me:             requires auth (user session or API key)
router = APIRouter()


@router.get("/auth-provider", response_model=AuthProviderResponse, response_model_exclude_none=True)
async def get_auth_provider(request: Request) -> AuthProviderResponse:
    """Return the active auth provider and, for the delegated provider, its publishable key."""
    provider: AuthProvider = request.app.state.auth_provider
    return AuthProviderResponse(**provider.public_info())


@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a signed bearer token.

    Only the local provider owns a signing key. Under external_jwt or clerk
    this endpoint does not exist (404) -- tokens come from the identity provider.

    Uses authenticate_user() which includes timing equalization [C1]. Unknown
    username, wrong password, and inactive account all return the same
    generic 401 so the response does not reveal which usernames exist.
    """
    provider: AuthProvider = request.app.state.auth_provider
    if not provider.can_issue_tokens:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Password login is not enabled for this auth provider."},
        )

    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid credentials."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    token = provider.issue_token(user.user_id)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            user_id=user.user_id,
            username=user.username,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/me", response_model=MeResponse)
def me(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    owner: User = Depends(get_account_owner),
) -> MeResponse:
    """Return the caller's account, plan, and current quota usage.

    Usage is read with peek -- looking at your own quota never spends it.
    """
    ledger: QuotaLedger = request.app.state.quota_ledger
    identifier, limit_type = quota_subject(principal)
    rate_status = ledger.peek_rate_limit(identifier, limit_type, get_rate_limit_for_plan(owner.plan))
    monthly_status = ledger.peek_monthly_link_limit(identifier, limit_type, get_monthly_link_limit_for_plan(owner.plan))
    return MeResponse(
        user_id=owner.user_id,
        username=owner.username,
        plan=owner.plan,
        auth_method=principal.kind.value,
        rate_limit=QuotaStatusResponse.from_status(rate_status),
        monthly_links=QuotaStatusResponse.from_status(monthly_status),
    )
