"""
api/routes/v1/admin.py -- Operator user management under /api/v1/__admin.

Routes:
  POST   /api/v1/__admin/users             -- create a local user
  GET    /api/v1/__admin/users             -- list users (?page=&limit=, limit capped at 100)
  PUT    /api/v1/__admin/users/{user_id}   -- change username, password, active flag, or plan
  DELETE /api/v1/__admin/users/{user_id}   -- delete a user and every key it owns

Every route depends on require_admin: "Authorization: Bearer <ADMIN_PASSWORD>",
compared in constant time. With ADMIN_PASSWORD unset every route is 404.

Plans are validated against quota/plans.py in the request models; this is
the only place a user's plan changes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import UserCreate, UserListResponse, UserResponse, UserUpdate
from auth.dependencies import require_admin
from auth.hashing import hash_secret
from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("shortlink.api")

router = APIRouter(dependencies=[Depends(require_admin)])

_USERNAME_TAKEN = {"code": "conflict", "message": "Username already exists."}


def _get_or_404(user_store: UserStore, user_id: str) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return user


@router.post("/__admin/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate) -> UserResponse:
    """Create a password user. 409 if the username is taken."""
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_username(body.username) is not None:
        raise HTTPException(status_code=409, detail=_USERNAME_TAKEN)

    new_user = User(
        user_id="",
        username=body.username,
        hashed_password=hash_secret(body.password),
        plan=body.plan,
        is_active=body.active,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        # Lost a race with a concurrent create for the same username.
        raise HTTPException(status_code=409, detail=_USERNAME_TAKEN) from exc

    logger.info("Admin created user %s (plan=%s)", user_id, body.plan)
    return UserResponse.from_user(_get_or_404(user_store, user_id))


@router.get("/__admin/users", response_model=UserListResponse)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
) -> UserListResponse:
    """List users one page at a time, oldest first."""
    limit = min(limit, 100)
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(offset=(page - 1) * limit, limit=limit)
    return UserListResponse(
        users=[UserResponse.from_user(u) for u in users],
        total=user_store.count_users(),
        page=page,
        limit=limit,
    )


@router.put("/__admin/users/{user_id}", response_model=UserResponse)
def update_user(request: Request, user_id: str, body: UserUpdate) -> UserResponse:
    """Update the given fields; omitted fields keep their value."""
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)

    updates: dict = {}
    if body.username is not None and body.username != target.username:
        other = user_store.get_by_username(body.username)
        if other is not None and other.user_id != user_id:
            raise HTTPException(status_code=409, detail=_USERNAME_TAKEN)
        updates["username"] = body.username
    if body.password is not None:
        updates["hashed_password"] = hash_secret(body.password)
    if body.active is not None:
        updates["is_active"] = body.active
    if body.plan is not None:
        updates["plan"] = body.plan

    if updates:
        try:
            user_store.update_user(user_id, **updates)
        except IntegrityError as exc:
            raise HTTPException(status_code=409, detail=_USERNAME_TAKEN) from exc
        logger.info("Admin updated user %s (%s)", user_id, ", ".join(sorted(updates)))

    return UserResponse.from_user(_get_or_404(user_store, user_id))


@router.delete("/__admin/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str) -> Response:
    """Hard-delete a user. Their API keys stop working immediately."""
    user_store: UserStore = request.app.state.user_store
    if not user_store.delete_user(user_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    logger.info("Admin deleted user %s", user_id)
    return Response(status_code=204)
