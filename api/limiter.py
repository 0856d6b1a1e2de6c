"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply the login limit with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

This limiter only guards password login against brute force. Plan quotas are
durable and shared across instances; they live in quota/, not here.

Keyed by get_client_ip so a proxy's X-Forwarded-For is honoured the same way
the quota ledger honours it.
"""

from slowapi import Limiter

from auth.principal import get_client_ip
from core.config import get_settings

limiter = Limiter(key_func=get_client_ip, storage_uri="memory://")


def login_rate_limit() -> str:
    """slowapi limit string for POST /login, read from settings at request time."""
    return get_settings().login_rate_limit
