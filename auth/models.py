"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
resolver do the work; these only own the shape.

Layer rule: no imports from api/ or quota/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# Capabilities an API key can be granted. Closed set -- anything else is
# rejected at key creation time.
SCOPE_SHORTEN_URL = "shorten_url"
SCOPE_READ_URLS = "read_urls"
SCOPE_WRITE_URLS = "write_urls"

VALID_SCOPES: tuple[str, ...] = (SCOPE_SHORTEN_URL, SCOPE_READ_URLS, SCOPE_WRITE_URLS)


@dataclass
class User:
    """A local or provider-backed identity.

    user_id is a string because external providers hand us opaque subjects
    (e.g. "user_2abc..."). Locally created users get a UUID4.

    username and hashed_password are None for users auto-provisioned from an
    external_jwt or clerk subject -- they never log in with a password here.

    plan is mutated administratively only; see quota/plans.py for the tiers.
    """

    user_id: str
    username: str | None = None
    hashed_password: str | None = None
    plan: str = "hobbyist"
    is_active: bool = True
    created_at: str | None = None


@dataclass
class ApiKey:
    """A long-lived, capability-restricted credential for scripts and CI.

    Security design:
    - secret_hash is an argon2id hash of the raw key. The raw key is returned
      ONCE at creation and is unrecoverable afterwards.
    - key_prefix (first 12 chars of the raw key) is stored for display and to
      narrow the set of hashes checked on lookup. It reveals only 5 random
      characters, far too few to help an attacker.
    - scopes keep the order the caller gave, de-duplicated.
    - Keys are never mutated after creation; they are deleted outright.
    """

    id: str
    owner_user_id: str
    secret_hash: str
    key_prefix: str
    scopes: list[str] = field(default_factory=list)
    created_at: str | None = None


class PrincipalKind(str, Enum):
    USER = "user"
    ANONYMOUS = "anonymous"
    SERVICE_KEY = "service_key"


@dataclass(frozen=True)
class Principal:
    """Who is making the current request. Built per request, never stored.

    identifier:
        USER        -> user id
        ANONYMOUS   -> client IP
        SERVICE_KEY -> API key id

    user_id is the owning user for USER and SERVICE_KEY principals (plan and
    quota lookups are per owner), None for ANONYMOUS.

    scopes is empty for USER principals, which means unrestricted. A
    SERVICE_KEY principal may only do what its scopes allow.
    """

    kind: PrincipalKind
    identifier: str
    scopes: frozenset[str] = frozenset()
    user_id: str | None = None
    client_ip: str = ""

    @property
    def is_authenticated(self) -> bool:
        return self.kind is not PrincipalKind.ANONYMOUS

    @classmethod
    def anonymous(cls, client_ip: str) -> "Principal":
        return cls(kind=PrincipalKind.ANONYMOUS, identifier=client_ip, client_ip=client_ip)

    @classmethod
    def for_user(cls, user_id: str, client_ip: str = "") -> "Principal":
        return cls(kind=PrincipalKind.USER, identifier=user_id, user_id=user_id, client_ip=client_ip)

    @classmethod
    def for_api_key(cls, key: ApiKey, client_ip: str = "") -> "Principal":
        return cls(
            kind=PrincipalKind.SERVICE_KEY,
            identifier=key.id,
            scopes=frozenset(key.scopes),
            user_id=key.owner_user_id,
            client_ip=client_ip,
        )
