"""
quota/models.py -- Value types returned by the quota ledger.

Pattern: Data class (pure data container). Mirrors auth/models.py.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class LimitType(str, Enum):
    """Whose counter is being charged: an anonymous client IP or a user id."""

    IP = "ip"
    USER = "user"


@dataclass(frozen=True)
class QuotaPolicy:
    """Deployment-level quota knobs that are not per-plan.

    Anonymous callers have no plan, so their limits live here. Interactive
    users (bearer-token sessions from the dashboard) are exempt from the
    hourly request limit by default; API keys and anonymous callers are not.
    """

    anonymous_hourly_limit: int = 5
    anonymous_monthly_link_limit: int = 1000
    exempt_user_sessions_from_rate_limit: bool = True


@dataclass(frozen=True)
class QuotaStatus:
    """Verdict for one counter in its current window.

    limit == 0 means unlimited; then remaining is -1 and reset is None.
    exceeded is True once the count passes the limit, so the (limit+1)-th
    request in a window is the first one rejected.
    """

    limit: int
    remaining: int
    reset: datetime | None
    exceeded: bool
    used: int = 0

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    def retry_after_seconds(self, now: datetime) -> int:
        """Whole seconds until reset, at least 1. 0 when there is no reset."""
        if self.reset is None:
            return 0
        return max(1, math.ceil((self.reset - now).total_seconds()))

    @classmethod
    def unlimited_status(cls) -> "QuotaStatus":
        return cls(limit=0, remaining=-1, reset=None, exceeded=False)

    @classmethod
    def from_count(cls, limit: int, count: int, reset: datetime) -> "QuotaStatus":
        return cls(
            limit=limit,
            remaining=max(0, limit - count),
            reset=reset,
            exceeded=count > limit,
            used=count,
        )
