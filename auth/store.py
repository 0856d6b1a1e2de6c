"""
auth/store.py -- SQLAlchemy Core persistence layer for users and API keys.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_api_key are the mappers. Route, resolver, and
dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  API key hashes are argon2id, so lookup cannot be an indexed equality match.
  get_api_key_candidates() narrows by the stored 12-char display prefix and
  the caller verifies each candidate hash.

Concurrency:
  get_or_create_user() tolerates the race where two requests auto-provision
  the same external subject: the loser's INSERT hits the primary key, and it
  re-reads the winner's row instead of failing.

DB path: auth/shortlink_auth.db unless a database_url is supplied.

Layer rule: no imports from api/ or quota/.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Boolean, Column, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import ApiKey, User
from core.errors import StorageError

logger = logging.getLogger("shortlink.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'shortlink_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("user_id", String(255), primary_key=True),
    Column("username", String(255), unique=True),  # NULL for provider-backed users
    Column("hashed_password", Text),  # NULL for provider-backed users
    Column("plan", String(32), nullable=False, server_default="hobbyist"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("secret_hash", Text, nullable=False),  # argon2id encoded hash
    Column("key_prefix", String(12), nullable=False, index=True),  # display + candidate filter
    Column("scopes", Text, nullable=False, server_default="[]"),  # JSON array, order preserved
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Ignored by in-memory databases.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and ApiKey entities.

    Usage:
        store = UserStore()
        store.create_user(User(user_id="u1", username="admin", hashed_password=hash_secret("secret")))
        user = store.get_by_username("admin")
        store.close()

    Every SQLAlchemyError is re-raised as StorageError so callers deal with
    one storage failure type regardless of the backend. The one exception is
    IntegrityError from create_user() and update_user(): a taken username is
    the caller's conflict, not a storage failure.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its user_id.

        Raises sqlalchemy.exc.IntegrityError if the user_id or username is
        already taken -- callers turn that into a 409.
        """
        user_id = user.user_id or str(uuid.uuid4())
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        user_id=user_id,
                        username=user.username,
                        hashed_password=user.hashed_password,
                        plan=user.plan,
                        is_active=user.is_active,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to create user: {exc}") from exc
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to load user: {exc}") from exc
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to load user: {exc}") from exc
        return _row_to_user(row) if row is not None else None

    def get_or_create_user(self, user_id: str) -> User:
        """Return the user for an externally verified subject, creating it if absent.

        New rows get username=user_id, no password, plan hobbyist. Safe under
        concurrent calls for the same subject.
        """
        existing = self.get_by_id(user_id)
        if existing is not None:
            return existing
        try:
            self.create_user(User(user_id=user_id, username=user_id))
            logger.info("Auto-provisioned user for external subject")
        except IntegrityError:
            # Lost the race to a concurrent request -- the row exists now.
            pass
        user = self.get_by_id(user_id)
        if user is None:
            raise StorageError("failed to ensure user exists: row missing after insert")
        return user

    def list_users(self, offset: int = 0, limit: int | None = None) -> list[User]:
        """Return users ordered by creation time, optionally one page of them. Admin-only."""
        stmt = _users.select().order_by(_users.c.created_at, _users.c.user_id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to list users: {exc}") from exc
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(select(func.count()).select_from(_users)).scalar()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to count users: {exc}") from exc
        return result or 0

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: plan, is_active, hashed_password, username.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - {"plan", "is_active", "hashed_password", "username"}
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_users.update().where(_users.c.user_id == user_id).values(**fields))
                conn.commit()
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to update user: {exc}") from exc
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user and every API key it owns.

        Returns True if the user existed. Both deletes run in one transaction
        so a half-deleted user cannot keep working keys.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(_api_keys.delete().where(_api_keys.c.user_id == user_id))
                result = conn.execute(_users.delete().where(_users.c.user_id == user_id))
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to delete user: {exc}") from exc
        return result.rowcount > 0

    def get_user_plan(self, user_id: str) -> str:
        """Return the user's plan, defaulting to hobbyist when unknown or empty."""
        user = self.get_by_id(user_id)
        if user is None or not user.plan:
            return "hobbyist"
        return user.plan

    # ------------------------------------------------------------------
    # API key queries
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        """Insert a new API key record and return it with created_at filled in."""
        created_at = _now_iso()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _api_keys.insert().values(
                        id=api_key.id,
                        user_id=api_key.owner_user_id,
                        secret_hash=api_key.secret_hash,
                        key_prefix=api_key.key_prefix,
                        scopes=json.dumps(api_key.scopes),
                        created_at=created_at,
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to create API key: {exc}") from exc
        api_key.created_at = created_at
        return api_key

    def get_api_keys(self, user_id: str) -> list[ApiKey]:
        """Return all API keys owned by a user (newest first)."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    _api_keys.select().where(_api_keys.c.user_id == user_id).order_by(_api_keys.c.created_at.desc())
                ).fetchall()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to list API keys: {exc}") from exc
        return [_row_to_api_key(r) for r in rows]

    def count_api_keys(self, user_id: str) -> int:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    select(func.count()).select_from(_api_keys).where(_api_keys.c.user_id == user_id)
                ).scalar()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to count API keys: {exc}") from exc
        return result or 0

    def get_api_key_candidates(self, key_prefix: str) -> list[ApiKey]:
        """Return every key whose display prefix matches. The caller verifies hashes."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(_api_keys.select().where(_api_keys.c.key_prefix == key_prefix)).fetchall()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to query API keys: {exc}") from exc
        return [_row_to_api_key(r) for r in rows]

    def delete_api_key(self, key_id: str, user_id: str) -> bool:
        """Delete a key. user_id is checked to prevent IDOR attacks.

        A user cannot delete another user's key even if they know the key id.
        Returns True if a key was deleted, False if not found or wrong owner.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _api_keys.delete().where((_api_keys.c.id == key_id) & (_api_keys.c.user_id == user_id))
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to delete API key: {exc}") from exc
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Auth database health probe failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        username=row.username,
        hashed_password=row.hashed_password,
        plan=row.plan or "hobbyist",
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_api_key(row) -> ApiKey:
    try:
        scopes = json.loads(row.scopes or "[]")
    except ValueError:
        # A corrupt scopes column grants nothing rather than everything.
        scopes = []
    return ApiKey(
        id=row.id,
        owner_user_id=row.user_id,
        secret_hash=row.secret_hash,
        key_prefix=row.key_prefix,
        scopes=list(scopes),
        created_at=row.created_at,
    )
