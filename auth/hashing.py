"""
auth/hashing.py -- Memory-hard secret hashing shared by passwords and API keys.

Security design decisions:
  Argon2id via argon2-cffi's PasswordHasher. Argon2id is memory-hard, so
      a GPU/ASIC attacker pays the memory cost on every guess -- the property
      that matters for both low-entropy passwords and leaked API-key hashes.

  Encoded format is the PHC string produced by PasswordHasher:
      $argon2id$v=19$m=65536,t=1,p=4$<salt b64>$<hash b64>
      (standard base64 alphabet, no padding). Every parameter needed to
      recompute the hash travels with it, so tuning the defaults later does
      not invalidate stored hashes.

  A fresh 16-byte salt per call means two hashes of the same secret differ,
      yet both verify.

  Verification runs in the argon2 C library, which compares in constant time.

verify_secret() raises the HashError family for corrupt input. Callers that
only need a yes/no answer use matches(), which maps any HashError to False --
a corrupt stored hash is never "valid".

Layer rule: no imports from api/ or quota/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from argon2 import PasswordHasher, Type, extract_parameters
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from argon2.low_level import ARGON2_VERSION

from core.errors import MalformedHash, UnsupportedAlgorithm, UnsupportedVersion

logger = logging.getLogger("shortlink.auth.hashing")

_ALGORITHM = "argon2id"
_SALT_BYTES = 16


@dataclass(frozen=True)
class Argon2Parameters:
    """Tunable cost parameters. memory_kib is in KiB (65536 = 64 MiB)."""

    memory_kib: int = 64 * 1024
    time_cost: int = 1
    parallelism: int = 4
    hash_len: int = 32


DEFAULT_PARAMETERS = Argon2Parameters()


@lru_cache(maxsize=8)
def _hasher(params: Argon2Parameters) -> PasswordHasher:
    return PasswordHasher(
        time_cost=params.time_cost,
        memory_cost=params.memory_kib,
        parallelism=params.parallelism,
        hash_len=params.hash_len,
        salt_len=_SALT_BYTES,
        type=Type.ID,
    )


def hash_secret(secret: str, params: Argon2Parameters = DEFAULT_PARAMETERS) -> str:
    """Return a self-describing argon2id hash of secret with a random salt."""
    return _hasher(params).hash(secret)


def _check_encoded(encoded: str) -> None:
    """Raise the matching HashError unless encoded is a v19 argon2id PHC string."""
    parts = encoded.split("$")
    if len(parts) != 6 or parts[0] != "" or not encoded.isascii():
        raise MalformedHash("invalid hash format")
    if parts[1] != _ALGORITHM:
        raise UnsupportedAlgorithm(f"unsupported hash algorithm: {parts[1]}")
    try:
        parameters = extract_parameters(encoded)
    except InvalidHashError:
        raise MalformedHash("failed to parse parameters") from None
    if parameters.version != ARGON2_VERSION:
        raise UnsupportedVersion(f"incompatible version: {parameters.version}")


def verify_secret(secret: str, encoded: str) -> bool:
    """Recompute the hash with the embedded parameters and compare in constant time.

    Raises MalformedHash, UnsupportedVersion, or UnsupportedAlgorithm when the
    encoded string cannot be interpreted.
    """
    _check_encoded(encoded)
    try:
        return _hasher(DEFAULT_PARAMETERS).verify(encoded, secret)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError) as exc:
        # undecodable salt/hash or parameters argon2 refuses to run
        raise MalformedHash(f"hash rejected: {exc}") from exc


def matches(secret: str, encoded: str | None) -> bool:
    """Boolean form of verify_secret(). Corrupt or missing hashes never match."""
    if not encoded:
        return False
    try:
        return verify_secret(secret, encoded)
    except (MalformedHash, UnsupportedVersion, UnsupportedAlgorithm) as exc:
        logger.warning("Stored hash rejected during verification: %s", exc)
        return False
