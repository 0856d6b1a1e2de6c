"""
quota/plans.py -- Plan registry: subscription tier -> numeric limits.

PLAN_LIMITS is the single source of truth for tier economics. Callers ask
limits_for_plan(); nothing else branches on plan names. Adding a tier means
adding a Plan member and one PLAN_LIMITS row.

A limit of 0 means unlimited. Unknown or empty plan names fall back to the
hobbyist row rather than raising -- a stale plan string in the users table
must never unlock unlimited usage.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

UNLIMITED = 0


class Plan(str, Enum):
    HOBBYIST = "hobbyist"
    VERIFIED_ACCESS = "verified_access"
    PRO = "pro"


DEFAULT_PLAN = Plan.HOBBYIST


@dataclass(frozen=True)
class PlanLimits:
    hourly_request_limit: int
    monthly_link_limit: int


PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.HOBBYIST: PlanLimits(hourly_request_limit=5, monthly_link_limit=1000),
    Plan.VERIFIED_ACCESS: PlanLimits(hourly_request_limit=UNLIMITED, monthly_link_limit=1000),
    Plan.PRO: PlanLimits(hourly_request_limit=UNLIMITED, monthly_link_limit=10000),
}


def parse_plan(plan: str | None) -> Plan:
    """Return the Plan for a stored plan string, defaulting to hobbyist."""
    try:
        return Plan(plan or DEFAULT_PLAN.value)
    except ValueError:
        return DEFAULT_PLAN


def is_known_plan(plan: str) -> bool:
    return plan in {p.value for p in Plan}


def limits_for_plan(plan: str | None) -> PlanLimits:
    return PLAN_LIMITS[parse_plan(plan)]


def get_rate_limit_for_plan(plan: str | None) -> int:
    """Requests per hour allowed for plan (0 = unlimited)."""
    return limits_for_plan(plan).hourly_request_limit


def get_monthly_link_limit_for_plan(plan: str | None) -> int:
    """Links per calendar month allowed for plan (0 = unlimited)."""
    return limits_for_plan(plan).monthly_link_limit
