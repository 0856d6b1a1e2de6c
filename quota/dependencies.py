"""
quota/dependencies.py -- FastAPI Depends() helpers that charge the quota ledger.

Link routes declare these as dependencies:

    @router.post("/shorten", dependencies=[Depends(enforce_rate_limit),
                                           Depends(enforce_monthly_link_quota)])

Who gets charged:
  anonymous     -> client IP, type "ip", QuotaPolicy anonymous limits
  service key   -> owning user, type "user", owner's plan limits
  user session  -> user id, type "user", plan limits; exempt from the hourly
                   request limit when QuotaPolicy says so

Each dependency sets the informational headers on the response and raises
HTTP 429 with Retry-After once the counter is past its limit. A StorageError
from the ledger propagates; the request is never treated as allowed.

Layer rule: may import auth/ (to read the Principal) but never api/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import Depends, HTTPException, Request, Response

from auth.dependencies import get_principal
from auth.models import Principal, PrincipalKind
from auth.store import UserStore
from quota.models import LimitType, QuotaPolicy, QuotaStatus
from quota.plans import get_monthly_link_limit_for_plan, get_rate_limit_for_plan
from quota.store import QuotaLedger

logger = logging.getLogger("shortlink.quota")

RATE_LIMIT_HEADER_PREFIX = "X-RateLimit"
MONTHLY_LINK_HEADER_PREFIX = "X-Monthly-Link"


def quota_subject(principal: Principal) -> tuple[str, LimitType]:
    """Counter key for a principal: its IP when anonymous, else the owning user id."""
    if principal.kind is PrincipalKind.ANONYMOUS or not principal.user_id:
        return principal.client_ip or principal.identifier, LimitType.IP
    return principal.user_id, LimitType.USER


def quota_headers(prefix: str, status: QuotaStatus) -> dict[str, str]:
    """Render X-<prefix>-Limit/Remaining/Reset. Unlimited counters send no headers."""
    if status.unlimited or status.reset is None:
        return {}
    return {
        f"{prefix}-Limit": str(status.limit),
        f"{prefix}-Remaining": str(status.remaining),
        f"{prefix}-Reset": str(int(status.reset.timestamp())),
    }


def _plan_for(request: Request, principal: Principal) -> str | None:
    user_store: UserStore = request.app.state.user_store
    return user_store.get_user_plan(principal.user_id)


def _reject(status: QuotaStatus, headers: dict[str, str], now: datetime, code: str, message: str) -> HTTPException:
    headers = dict(headers)
    headers["Retry-After"] = str(status.retry_after_seconds(now))
    return HTTPException(
        status_code=429,
        detail={"code": code, "message": message},
        headers=headers,
    )


def enforce_rate_limit(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
) -> QuotaStatus:
    """Charge one request against the caller's hourly window."""
    ledger: QuotaLedger = request.app.state.quota_ledger
    policy: QuotaPolicy = request.app.state.quota_policy

    if principal.kind is PrincipalKind.USER and policy.exempt_user_sessions_from_rate_limit:
        return QuotaStatus.unlimited_status()

    identifier, limit_type = quota_subject(principal)
    if limit_type is LimitType.IP:
        limit = policy.anonymous_hourly_limit
    else:
        limit = get_rate_limit_for_plan(_plan_for(request, principal))

    status = ledger.check_rate_limit(identifier, limit_type, limit)
    headers = quota_headers(RATE_LIMIT_HEADER_PREFIX, status)
    if status.exceeded:
        logger.info("Hourly limit exceeded for %s %s", limit_type.value, identifier)
        raise _reject(
            status,
            headers,
            ledger.now(),
            "rate_limit_exceeded",
            f"Rate limit exceeded. Limit: {status.limit} requests per hour.",
        )
    response.headers.update(headers)
    return status


def enforce_monthly_link_quota(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
) -> QuotaStatus:
    """Charge one link against the caller's calendar-month window."""
    ledger: QuotaLedger = request.app.state.quota_ledger
    policy: QuotaPolicy = request.app.state.quota_policy

    identifier, limit_type = quota_subject(principal)
    if limit_type is LimitType.IP:
        limit = policy.anonymous_monthly_link_limit
    else:
        limit = get_monthly_link_limit_for_plan(_plan_for(request, principal))

    status = ledger.check_monthly_link_limit(identifier, limit_type, limit)
    headers = quota_headers(MONTHLY_LINK_HEADER_PREFIX, status)
    if status.exceeded:
        logger.info("Monthly link limit exceeded for %s %s", limit_type.value, identifier)
        raise _reject(
            status,
            headers,
            ledger.now(),
            "monthly_link_limit_exceeded",
            f"Monthly link limit exceeded. Limit: {status.limit} links per month.",
        )
    response.headers.update(headers)
    return status
