"""
quota/windows.py -- Fixed window arithmetic for the usage counters.

All times are UTC. A window is identified by its start; the reset time is the
start of the following window. Both functions are pure so tests can pin the
clock.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def hour_window_start(now: datetime) -> datetime:
    return _as_utc(now).replace(minute=0, second=0, microsecond=0)


def hour_window_reset(start: datetime) -> datetime:
    return start + timedelta(hours=1)


def month_window_start(now: datetime) -> datetime:
    return _as_utc(now).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def month_window_reset(start: datetime) -> datetime:
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


@dataclass(frozen=True)
class Window:
    """A named windowing rule: how to find the current start, and its reset."""

    name: str
    start_of: Callable[[datetime], datetime]
    reset_of: Callable[[datetime], datetime]


HOURLY = Window(name="hourly", start_of=hour_window_start, reset_of=hour_window_reset)
MONTHLY = Window(name="monthly", start_of=month_window_start, reset_of=month_window_reset)
