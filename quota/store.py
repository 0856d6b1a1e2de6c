"""
quota/store.py -- Durable, windowed usage counters shared by every server instance.

Pattern: Repository (same shape as auth/store.py). QuotaLedger owns two
independently windowed counters that share one algorithm:

  rate_limits          hourly request counter   (window_start, request_count)
  monthly_link_limits  monthly link counter     (month_start, link_count)

Each row is unique per (identifier, type, window). check() charges one unit
and returns the verdict; peek() reads without writing; cleanup() drops
windows that ended before a retention horizon.

Concurrency:
  The read-increment-write runs inside one explicit transaction
  (engine.begin(): commit on success, rollback on every error path) as a
  single upsert statement:

      INSERT ... VALUES (..., count=1)
      ON CONFLICT (identifier, type, window) DO UPDATE SET count = count + 1
      RETURNING count

  The database serializes conflicting upserts on the unique key, so two
  concurrent callers can never both observe count N and both write N+1 --
  across threads, processes, or hosts. SQLite and PostgreSQL get the native
  upsert; any other dialect falls back to SELECT ... FOR UPDATE plus an
  INSERT/UPDATE in the same transaction.

  A failed transaction raises StorageError. It is never reported as
  "allowed".

DB path: quota/shortlink_quota.db unless a database_url is supplied.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.errors import StorageError
from quota.models import LimitType, QuotaStatus
from quota.windows import HOURLY, MONTHLY, Window, utcnow

logger = logging.getLogger("shortlink.quota")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'shortlink_quota.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identifier", String(255), nullable=False, index=True),  # client IP or user_id
    Column("type", String(20), nullable=False),  # "ip" or "user"
    Column("window_start", DateTime, nullable=False, index=True),  # naive UTC, hour aligned
    Column("request_count", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("identifier", "type", "window_start", name="uq_rate_limits_window"),
)

_monthly_link_limits = Table(
    "monthly_link_limits",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identifier", String(255), nullable=False, index=True),
    Column("type", String(20), nullable=False),
    Column("month_start", DateTime, nullable=False, index=True),  # naive UTC, first of month
    Column("link_count", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("identifier", "type", "month_start", name="uq_monthly_link_limits_window"),
)

_UPSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """WAL lets readers proceed while an increment holds the write lock."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _naive(ts: datetime) -> datetime:
    """Columns store naive UTC so SQLite and PostgreSQL compare identically."""
    return ts.replace(tzinfo=None)


# ---------------------------------------------------------------------------
# One windowed counter
# ---------------------------------------------------------------------------


class WindowedCounter:
    """Check-and-increment, peek, and cleanup for one counter table."""

    def __init__(
        self,
        engine: Engine,
        table: Table,
        window_column: str,
        count_column: str,
        window: Window,
        clock: Callable[[], datetime],
    ) -> None:
        self._engine = engine
        self._table = table
        self._window_col = table.c[window_column]
        self._count_col = table.c[count_column]
        self.window = window
        self._clock = clock

    def check(self, identifier: str, limit_type: LimitType | str, limit: int) -> QuotaStatus:
        """Charge one unit against (identifier, type, current window) and return the verdict.

        limit == 0 is unlimited and never touches storage.
        """
        if limit == 0:
            return QuotaStatus.unlimited_status()

        now = self._clock()
        start = self.window.start_of(now)
        reset = self.window.reset_of(start)
        try:
            with self._engine.begin() as conn:
                count = self._increment(conn, LimitType(limit_type).value, identifier, _naive(start), _naive(now))
        except SQLAlchemyError as exc:
            logger.exception("%s counter transaction failed", self.window.name)
            raise StorageError(f"failed to check {self.window.name} limit: {exc}") from exc
        return QuotaStatus.from_count(limit, count, reset)

    def _increment(self, conn: Connection, limit_type: str, identifier: str, start: datetime, now: datetime) -> int:
        t = self._table
        upsert = _UPSERTS.get(conn.dialect.name)
        if upsert is not None:
            stmt = upsert(t).values(
                {
                    t.c.id: str(uuid.uuid4()),
                    t.c.identifier: identifier,
                    t.c.type: limit_type,
                    self._window_col: start,
                    self._count_col: 1,
                    t.c.created_at: now,
                    t.c.updated_at: now,
                }
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[t.c.identifier, t.c.type, self._window_col],
                set_={self._count_col.name: self._count_col + 1, "updated_at": now},
            ).returning(self._count_col)
            return conn.execute(stmt).scalar_one()

        key = (t.c.identifier == identifier) & (t.c.type == limit_type) & (self._window_col == start)
        current = conn.execute(select(self._count_col).where(key).with_for_update()).scalar()
        if current is None:
            conn.execute(
                t.insert().values(
                    {
                        t.c.id: str(uuid.uuid4()),
                        t.c.identifier: identifier,
                        t.c.type: limit_type,
                        self._window_col: start,
                        self._count_col: 1,
                        t.c.created_at: now,
                        t.c.updated_at: now,
                    }
                )
            )
            return 1
        conn.execute(t.update().where(key).values({self._count_col: self._count_col + 1, t.c.updated_at: now}))
        return current + 1

    def peek(self, identifier: str, limit_type: LimitType | str, limit: int) -> QuotaStatus:
        """Read-only status for the current window. Never creates or mutates rows."""
        if limit == 0:
            return QuotaStatus.unlimited_status()

        start = self.window.start_of(self._clock())
        reset = self.window.reset_of(start)
        t = self._table
        try:
            with self._engine.connect() as conn:
                count = conn.execute(
                    select(self._count_col).where(
                        (t.c.identifier == identifier)
                        & (t.c.type == LimitType(limit_type).value)
                        & (self._window_col == _naive(start))
                    )
                ).scalar()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read {self.window.name} limit: {exc}") from exc
        return QuotaStatus.from_count(limit, count or 0, reset)

    def cleanup(self, retention: timedelta) -> int:
        """Delete rows whose window started before now - retention. Returns rows removed.

        Only fully expired windows qualify, so this is safe to run while
        increments are in flight.
        """
        cutoff = _naive(self._clock() - retention)
        try:
            with self._engine.begin() as conn:
                result = conn.execute(self._table.delete().where(self._window_col < cutoff))
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to clean up {self.window.name} counters: {exc}") from exc
        return result.rowcount


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class QuotaLedger:
    """Hourly request and monthly link counters over one database.

    Usage:
        ledger = QuotaLedger()
        status = ledger.check_rate_limit("203.0.113.7", LimitType.IP, 5)
        if status.exceeded: ...
        ledger.close()

    clock is read on every call; tests replace it to pin or advance time.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], datetime] = utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Writers wait for the lock instead of failing under contention.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)
        self.clock = clock
        self.rate_limits = WindowedCounter(
            self.engine, _rate_limits, "window_start", "request_count", HOURLY, self.now
        )
        self.monthly_links = WindowedCounter(
            self.engine, _monthly_link_limits, "month_start", "link_count", MONTHLY, self.now
        )

    def now(self) -> datetime:
        return self.clock()

    def check_rate_limit(self, identifier: str, limit_type: LimitType | str, limit: int) -> QuotaStatus:
        return self.rate_limits.check(identifier, limit_type, limit)

    def peek_rate_limit(self, identifier: str, limit_type: LimitType | str, limit: int) -> QuotaStatus:
        return self.rate_limits.peek(identifier, limit_type, limit)

    def check_monthly_link_limit(self, identifier: str, limit_type: LimitType | str, limit: int) -> QuotaStatus:
        return self.monthly_links.check(identifier, limit_type, limit)

    def peek_monthly_link_limit(self, identifier: str, limit_type: LimitType | str, limit: int) -> QuotaStatus:
        return self.monthly_links.peek(identifier, limit_type, limit)

    def cleanup(self, rate_limit_retention: timedelta, monthly_retention: timedelta) -> dict[str, int]:
        """Run cleanup on both counters with their own horizons."""
        removed = {
            "rate_limits": self.rate_limits.cleanup(rate_limit_retention),
            "monthly_link_limits": self.monthly_links.cleanup(monthly_retention),
        }
        logger.info(
            "Quota cleanup removed %d hourly and %d monthly rows",
            removed["rate_limits"],
            removed["monthly_link_limits"],
        )
        return removed

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Quota database health probe failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
