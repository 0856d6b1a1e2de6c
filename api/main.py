"""
api/main.py -- FastAPI application entry point for the shortlink auth and quota core.

Exposes login, API key management, account status, and operator routes, and
hosts the shared state the link routes depend on (principal resolver, user
store, quota ledger).

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces the login brute-force limit from api.limiter

Lifespan handles startup (auth config, provider, stores, cleanup task) and
shutdown (cancel cleanup task, close DB connections and HTTP session)
symmetrically. Configuration is read once here and passed down explicitly;
nothing below this module calls get_settings().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from auth.principal import PrincipalResolver
from auth.providers import build_auth_provider
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import AuthorizationError, StorageError
from quota.models import QuotaPolicy
from quota.store import QuotaLedger

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("shortlink.api")

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


def quota_retention(settings: Settings) -> tuple[timedelta, timedelta]:
    """(hourly, monthly) retention horizons. Settings guarantees neither reaches a live window."""
    return (
        timedelta(hours=settings.rate_limit_retention_hours),
        timedelta(days=settings.monthly_limit_retention_days),
    )


async def _purge_loop(app: FastAPI, interval_seconds: int, retention: tuple[timedelta, timedelta]) -> None:
    """Drop expired quota windows every interval_seconds.

    Runs as a background asyncio task started in lifespan startup. The
    blocking database work runs in a worker thread so request handling is
    never stalled. A failed pass is logged and retried on the next tick;
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.quota_ledger.cleanup, *retention)
        except StorageError:
            logger.exception("Quota cleanup pass failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


def _store_kwargs(settings: Settings) -> dict:
    return {"db_url": settings.database_url} if settings.database_url else {}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Pattern: asynccontextmanager lifespan. Everything before yield runs on
    startup; everything after yield runs on shutdown.

    Startup order matters:
      1. Auth provider first -- a ConfigError (bad PEM, missing secret,
         unknown provider) must abort startup before anything listens.
      2. Stores second -- the resolver needs the user store.
      3. Cleanup task last -- references app.state.quota_ledger.
    """
    settings = get_settings()
    logger.info("Shortlink API starting up")
    provider = build_auth_provider(settings.auth_config())
    app.state.auth_provider = provider

    app.state.user_store = UserStore(**_store_kwargs(settings))
    app.state.quota_ledger = QuotaLedger(**_store_kwargs(settings))
    app.state.quota_policy = QuotaPolicy(
        anonymous_hourly_limit=settings.anonymous_hourly_limit,
        anonymous_monthly_link_limit=settings.anonymous_monthly_link_limit,
    )
    app.state.resolver = PrincipalResolver(app.state.user_store, provider)
    app.state.admin_password = settings.admin_password
    if settings.admin_password:
        logger.info("Admin endpoints enabled at /api/v1/__admin/*")
    logger.info("Stores initialized")

    app.state.purge_task = asyncio.create_task(
        _purge_loop(app, settings.quota_cleanup_interval_seconds, quota_retention(settings))
    )

    yield

    # Shutdown
    app.state.purge_task.cancel()
    app.state.quota_ledger.close()
    app.state.user_store.close()
    provider.close()
    logger.info("Shortlink API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Shortlink API",
    description="Authentication, API keys, and plan quotas for the link shortener.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette (FastAPI's foundation) wraps middleware in reverse registration
# order at the ASGI level, but add_middleware() calls are applied outermost-
# first from the caller's perspective. Register in the order you want the
# request to encounter them: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.trusted_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    expose_headers=[
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "X-Monthly-Link-Limit",
        "X-Monthly-Link-Remaining",
        "X-Monthly-Link-Reset",
    ],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"], include_in_schema=False)


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the slowapi login limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    """Return 403 when a service key lacks the scope a route requires."""
    return JSONResponse(
        status_code=403,
        content=ErrorResponse(
            error=ErrorDetail(
                code="insufficient_scope",
                message=str(exc),
                detail=exc.required_scope,
            )
        ).model_dump(),
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Return 500 when persistence fails. A quota check that cannot be recorded is never allowed."""
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="storage_error",
                message="A storage error occurred. Please retry.",
            )
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. When detail is already a structured dict, use it directly as the
    error field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON. Headers (Retry-After, X-RateLimit-*) are passed through.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness plus a probe of both databases."""
    database_ok = request.app.state.user_store.ping() and request.app.state.quota_ledger.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
