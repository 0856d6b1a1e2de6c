"""
auth/tokens.py -- Bearer token signing/verification and API key secrets.

Security design decisions:
  JWT: python-jose. Tokens carry exactly one claim, "sub" (the user id).
       HS256 signs with the shared secret; RS256 signs with a PEM private key
       (PKCS#1 "BEGIN RSA PRIVATE KEY" or PKCS#8 "BEGIN PRIVATE KEY", detected
       by cryptography's PEM loader) and verifies with a PEM public key.

       Verification pins the configured algorithm -- a token whose header
       names any other algorithm is rejected, which closes the classic
       RS256/HS256 confusion attack.

       Verification checks the signature and the presence of "sub" only.
       exp/iat/nbf/iss/aud are NOT checked: a token with a valid signature is
       accepted regardless of age. This matches the deployed behavior of the
       service and is recorded as an open risk in DESIGN.md.

  API keys: "osp_sk_" + base64url(32 random bytes). 256 bits of entropy from
       the secrets module -- brute force is computationally infeasible. The
       raw key is returned once; only its argon2 hash is stored.

Every function takes the JWTConfig explicitly. Nothing here reads settings.

Layer rule: no imports from api/ or quota/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import JWTError, jwt
from jose.exceptions import JOSEError

from core.config import JWTConfig
from core.errors import ConfigError, CryptoError, InvalidSignature

logger = logging.getLogger("shortlink.auth")

API_KEY_PREFIX = "osp_sk_"
API_KEY_RANDOM_BYTES = 32

# Options that turn python-jose into a signature-only verifier.
_SIGNATURE_ONLY = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iat": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iss": False,
    "verify_sub": True,
    "verify_jti": False,
    "verify_at_hash": False,
}


# ---------------------------------------------------------------------------
# PEM parsing
# ---------------------------------------------------------------------------


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Parse a PEM RSA private key in PKCS#1 or PKCS#8 form."""
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise CryptoError(f"failed to parse private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError("not an RSA private key")
    return key


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """Parse a PEM RSA public key (SubjectPublicKeyInfo, or PKCS#1 as a fallback)."""
    data = pem.encode("utf-8")
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as exc:
        raise CryptoError(f"failed to parse public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError("not an RSA public key")
    return key


def _private_pem(jwt_config: JWTConfig) -> str:
    key = load_private_key(jwt_config.private_key)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(jwt_config: JWTConfig) -> str:
    key = load_public_key(jwt_config.public_key)
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def check_key_material(jwt_config: JWTConfig, signing: bool) -> None:
    """Parse configured PEMs once at startup so malformed keys abort boot.

    Raises ConfigError (not CryptoError) because at startup this is a
    configuration defect, not a per-request failure.
    """
    if jwt_config.algorithm != "RS256":
        return
    try:
        load_public_key(jwt_config.public_key)
        if signing:
            load_private_key(jwt_config.private_key)
    except CryptoError as exc:
        raise ConfigError(f"invalid RS256 key material: {exc}") from exc


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def sign_token(subject_id: str, jwt_config: JWTConfig | None) -> str:
    """Return a JWT whose only claim is sub=subject_id.

    Raises ConfigError when the config or the key material for the algorithm
    is missing, CryptoError when the algorithm is unsupported or the private
    key cannot be parsed.
    """
    if jwt_config is None:
        raise ConfigError("JWT config not provided")
    claims = {"sub": subject_id}

    if jwt_config.algorithm == "HS256":
        if not jwt_config.secret_key:
            raise ConfigError("secret_key is required for HS256")
        key = jwt_config.secret_key
    elif jwt_config.algorithm == "RS256":
        if not jwt_config.private_key:
            raise ConfigError("private_key is required for RS256")
        key = _private_pem(jwt_config)
    else:
        raise CryptoError(f"unsupported algorithm: {jwt_config.algorithm!r}")

    try:
        return jwt.encode(claims, key, algorithm=jwt_config.algorithm)
    except JOSEError as exc:
        raise CryptoError(f"failed to sign token: {exc}") from exc


def check_signature_encoding(token: str) -> None:
    """Reject signature segments whose unused trailing bits are set.

    The last base64url character of a signature also carries padding bits
    that decoders ignore, so several spellings decode to the same bytes.
    Only the unpadded canonical spelling is accepted.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidSignature("failed to verify token: not a three-part JWS")
    segment = parts[2]
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        raise InvalidSignature("failed to verify token: undecodable signature") from None
    if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != segment:
        raise InvalidSignature("failed to verify token: non-canonical signature encoding")


def verify_token(token: str, jwt_config: JWTConfig | None) -> str:
    """Verify the signature of token and return its subject.

    Raises InvalidSignature for any token that does not verify or carries no
    usable subject. Raises ConfigError/CryptoError when the verifier itself is
    misconfigured -- those are not the caller's fault and must not be mistaken
    for a bad token.
    """
    if jwt_config is None:
        raise ConfigError("JWT config not provided")

    if jwt_config.algorithm == "HS256":
        if not jwt_config.secret_key:
            raise ConfigError("secret key not provided for HS256")
        key = jwt_config.secret_key
    elif jwt_config.algorithm == "RS256":
        if not jwt_config.public_key:
            raise ConfigError("public key not provided for RS256")
        key = _public_pem(jwt_config)
    else:
        raise CryptoError(f"unsupported algorithm: {jwt_config.algorithm!r}")

    check_signature_encoding(token)
    try:
        claims = jwt.decode(token, key, algorithms=[jwt_config.algorithm], options=_SIGNATURE_ONLY)
    except JWTError as exc:
        raise InvalidSignature(f"failed to verify token: {exc}") from exc

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise InvalidSignature("'sub' claim is missing or invalid")
    return subject


# ---------------------------------------------------------------------------
# API key secrets
# ---------------------------------------------------------------------------


def generate_api_key_secret() -> str:
    """Return a new API key: osp_sk_<base64url, unpadded, 32 random bytes>."""
    raw = secrets.token_bytes(API_KEY_RANDOM_BYTES)
    encoded = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return f"{API_KEY_PREFIX}{encoded}"


def is_api_key(credential: str) -> bool:
    return credential.startswith(API_KEY_PREFIX)


def api_key_display_prefix(raw_key: str) -> str:
    """First 12 characters of a raw key -- safe to store and show."""
    return raw_key[:12]
