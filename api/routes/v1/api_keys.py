"""
api/routes/v1/api_keys.py -- API key lifecycle for the signed-in user.

Routes:
  POST   /api/v1/api-keys          -- create a key; the raw key is returned ONCE
  GET    /api/v1/api-keys          -- list the caller's keys (never the secret)
  DELETE /api/v1/api-keys/{id}     -- delete a key (ownership checked)

Security:
  Every route requires a user session (require_user). A service key can
  never list, mint, or delete keys, so a narrowly scoped key cannot widen
  itself.
  [H3] At most MAX_KEYS_PER_USER keys per user.
  IDOR guard: DELETE passes user_id to the store; the store checks ownership.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyListResponse, ApiKeyResponse
from auth.dependencies import require_user
from auth.hashing import hash_secret
from auth.models import ApiKey, User
from auth.store import UserStore
from auth.tokens import api_key_display_prefix, generate_api_key_secret

logger = logging.getLogger("shortlink.api")

MAX_KEYS_PER_USER = 10

router = APIRouter()


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    current_user: User = Depends(require_user),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored.

    Only the argon2id hash and the 12-character display prefix are persisted.
    """
    user_store: UserStore = request.app.state.user_store

    if user_store.count_api_keys(current_user.user_id) >= MAX_KEYS_PER_USER:  # [H3]
        raise HTTPException(
            status_code=400,
            detail={
                "code": "key_limit_reached",
                "message": f"Maximum of {MAX_KEYS_PER_USER} API keys per user. Delete an existing key first.",
            },
        )

    raw_key = generate_api_key_secret()
    api_key = user_store.create_api_key(
        ApiKey(
            id=str(uuid.uuid4()),
            owner_user_id=current_user.user_id,
            secret_hash=hash_secret(raw_key),
            key_prefix=api_key_display_prefix(raw_key),
            scopes=list(body.scopes),
        )
    )
    logger.info("API key %s created with scopes %s", api_key.id, ",".join(api_key.scopes))

    return ApiKeyCreatedResponse(
        id=api_key.id,
        key_prefix=api_key.key_prefix,
        scopes=list(api_key.scopes),
        created_at=api_key.created_at or "",
        key=raw_key,
    )


@router.get("/api-keys", response_model=ApiKeyListResponse)
def list_api_keys(
    request: Request,
    current_user: User = Depends(require_user),
) -> ApiKeyListResponse:
    """List the caller's API keys, newest first. Raw key values are never returned."""
    user_store: UserStore = request.app.state.user_store
    keys = user_store.get_api_keys(current_user.user_id)
    return ApiKeyListResponse(keys=[ApiKeyResponse.from_api_key(k) for k in keys])


@router.delete("/api-keys/{key_id}", status_code=204)
def delete_api_key(
    request: Request,
    key_id: str,
    current_user: User = Depends(require_user),
) -> Response:
    """Delete an API key. Ownership is verified server-side [IDOR guard].

    Another user's key id gets the same 404 as an unknown id.
    """
    user_store: UserStore = request.app.state.user_store
    if not user_store.delete_api_key(key_id, current_user.user_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "API key not found."},
        )
    return Response(status_code=204)
