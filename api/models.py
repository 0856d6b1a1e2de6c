"""
API request and response models for the shortlink REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
quota/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: auth/ and quota/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import VALID_SCOPES, ApiKey, User
from quota.models import QuotaStatus
from quota.plans import Plan, is_known_plan

# ---------------------------------------------------------------------------
# Login and provider discovery
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/login."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    user_id: str
    username: Optional[str] = None


class AuthProviderResponse(BaseModel):
    """Response for GET /api/v1/auth-provider.

    clerk_publishable_key is only present for the delegated provider. The
    provider's secret key is never part of this model.
    """

    model_config = ConfigDict(frozen=True)

    auth_provider: str
    clerk_publishable_key: Optional[str] = None


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/api-keys.

    Scopes are de-duplicated in the order given, then each one is checked
    against the closed scope set.
    """

    scopes: list[str] = Field(
        min_length=1,
        description="Capabilities granted to the key: shorten_url, read_urls, write_urls.",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def dedupe_scopes(cls, values: list) -> list:
        if not isinstance(values, list):
            return values
        seen: set = set()
        result: list = []
        for v in values:
            if v not in seen:
                seen.add(v)
                result.append(v)
        return result

    @field_validator("scopes")
    @classmethod
    def check_scopes(cls, values: list[str]) -> list[str]:
        for scope in values:
            if scope not in VALID_SCOPES:
                raise ValueError(f"Invalid scope: {scope}")
        return values


class ApiKeyResponse(BaseModel):
    """One API key as listed. Never includes the secret or its hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    key_prefix: str
    scopes: list[str]
    created_at: str

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            key_prefix=key.key_prefix,
            scopes=list(key.scopes),
            created_at=key.created_at or "",
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Creation response: the only time the raw key is ever returned."""

    key: str


class ApiKeyListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    keys: list[ApiKeyResponse]


# ---------------------------------------------------------------------------
# Account status
# ---------------------------------------------------------------------------


class QuotaStatusResponse(BaseModel):
    """One counter's state. limit 0 means unlimited (remaining -1, reset null)."""

    model_config = ConfigDict(frozen=True)

    limit: int
    remaining: int
    used: int
    reset: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: QuotaStatus) -> "QuotaStatusResponse":
        return cls(limit=status.limit, remaining=status.remaining, used=status.used, reset=status.reset)


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: Optional[str] = None
    plan: str
    auth_method: str
    rate_limit: QuotaStatusResponse
    monthly_links: QuotaStatusResponse


# ---------------------------------------------------------------------------
# Admin user management
# ---------------------------------------------------------------------------


def _check_plan(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_known_plan(value):
        raise ValueError(f"Unknown plan: {value}. Valid plans: {', '.join(p.value for p in Plan)}")
    return value


class UserCreate(BaseModel):
    """Request body for POST /api/v1/__admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    active: bool = True
    plan: str = Plan.HOBBYIST.value

    @field_validator("plan")
    @classmethod
    def validate_plan(cls, value: Optional[str]) -> Optional[str]:
        return _check_plan(value)


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/__admin/users/{user_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=1, max_length=255)
    password: Optional[str] = Field(default=None, min_length=1, max_length=1024)
    active: Optional[bool] = None
    plan: Optional[str] = None

    @field_validator("plan")
    @classmethod
    def validate_plan(cls, value: Optional[str]) -> Optional[str]:
        return _check_plan(value)


class UserResponse(BaseModel):
    """A user as the admin API shows it. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: Optional[str] = None
    active: bool
    plan: str
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            user_id=user.user_id,
            username=user.username,
            active=user.is_active,
            plan=user.plan,
            created_at=user.created_at or "",
        )


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
