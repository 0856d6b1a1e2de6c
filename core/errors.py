"""
core/errors.py -- Exception taxonomy shared by auth/ and quota/.

Every failure the core can raise derives from ShortlinkError so the API layer
can install one handler per family instead of catching broad Exception.

Recovery rules:
  ConfigError          fatal at startup. Never caught below the app factory.
  CryptoError          malformed key material or unsupported algorithm at
                       sign/verify time. Surfaced as a signing failure.
  InvalidSignature     token failed verification. Optional auth maps it to
                       an anonymous principal.
  HashError family     corrupt stored hash. Callers treat it as "does not
                       match", never as "valid".
  AuthorizationError   authenticated but missing a scope. Becomes 403.
  StorageError         counter or repository transaction failed. Becomes
                       500; a failed quota check never counts as allowed.
  ProviderError        delegated identity provider unreachable or returned
                       something unusable. Handled like InvalidSignature.

Layer rule: core/ is the kernel. No imports from api/, auth/, or quota/.
"""

from __future__ import annotations


class ShortlinkError(Exception):
    """Base class for all errors raised by the auth and quota core."""


class ConfigError(ShortlinkError, ValueError):
    """Missing or inconsistent configuration detected at startup.

    Subclasses ValueError so pydantic model validators report it as a normal
    validation failure with the original message.
    """


class CryptoError(ShortlinkError):
    """Key material could not be parsed or the algorithm is not supported."""


class InvalidSignature(ShortlinkError):
    """A bearer token failed signature verification or lacks a subject."""


class HashError(ShortlinkError):
    """Base for encoded-hash parsing failures."""


class MalformedHash(HashError):
    pass


class UnsupportedVersion(HashError):
    pass


class UnsupportedAlgorithm(HashError):
    pass


class AuthorizationError(ShortlinkError):
    """The principal is authenticated but lacks the scope an operation needs."""

    def __init__(self, required_scope: str) -> None:
        super().__init__(f"Insufficient permissions. Required scope: {required_scope}")
        self.required_scope = required_scope


class StorageError(ShortlinkError):
    """A persistence transaction failed. The operation did not take effect."""


class ProviderError(ShortlinkError):
    """The delegated identity provider could not give a usable answer."""
