#!/usr/bin/env python3
"""
shortlink -- Operator command line for the auth and quota core.

Usage:
  python main.py sign-token USER_ID
  python main.py hash-secret
  python main.py generate-api-key
  python main.py generate-api-key --user-id USER_ID --scope shorten_url --scope read_urls
  python main.py cleanup

Every command reads the same environment as the API server (AUTH_PROVIDER,
JWT_*, DATABASE_URL, ...). A misconfiguration exits with status 2 and the
configuration error on stderr.
"""

import argparse
import getpass
import sys
import uuid
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError

from auth.hashing import hash_secret
from auth.models import VALID_SCOPES, ApiKey
from auth.providers import build_auth_provider
from auth.store import UserStore
from auth.tokens import api_key_display_prefix, generate_api_key_secret
from core.config import Settings, get_settings
from core.errors import ConfigError, CryptoError, StorageError
from quota.store import QuotaLedger


def _load_settings() -> Settings:
    try:
        return get_settings()
    except (ConfigError, ValidationError) as e:
        print(f"  [!] Configuration error: {e}", file=sys.stderr)
        sys.exit(2)


def _store_kwargs(settings: Settings) -> dict:
    return {"db_url": settings.database_url} if settings.database_url else {}


def _read_secret(prompt: str) -> str:
    """Read a secret without echo on a terminal, or one line from piped stdin."""
    if sys.stdin.isatty():
        return getpass.getpass(prompt)
    return sys.stdin.readline().rstrip("\n")


def cmd_sign_token(args: argparse.Namespace) -> int:
    settings = _load_settings()
    try:
        provider = build_auth_provider(settings.auth_config())
        print(provider.issue_token(args.user_id))
    except (ConfigError, CryptoError) as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 2
    return 0


def cmd_hash_secret(args: argparse.Namespace) -> int:
    secret = _read_secret("Secret: ")
    if not secret:
        print("  [!] Refusing to hash an empty secret.", file=sys.stderr)
        return 1
    print(hash_secret(secret))
    return 0


def cmd_generate_api_key(args: argparse.Namespace) -> int:
    """Print a fresh API key. With --user-id the key is also stored for that user."""
    raw_key = generate_api_key_secret()
    secret_hash = hash_secret(raw_key)
    prefix = api_key_display_prefix(raw_key)

    if not args.user_id:
        print(f"key:    {raw_key}")
        print(f"prefix: {prefix}")
        print(f"hash:   {secret_hash}")
        return 0

    scopes: list[str] = []
    for scope in args.scope or []:
        if scope not in scopes:
            scopes.append(scope)
    if not scopes:
        print("  [!] At least one --scope is required when storing a key.", file=sys.stderr)
        return 1

    settings = _load_settings()
    store = UserStore(**_store_kwargs(settings))
    try:
        if store.get_by_id(args.user_id) is None:
            print(f"  [!] No user with id '{args.user_id}'.", file=sys.stderr)
            return 1
        key = store.create_api_key(
            ApiKey(
                id=str(uuid.uuid4()),
                owner_user_id=args.user_id,
                secret_hash=secret_hash,
                key_prefix=prefix,
                scopes=scopes,
            )
        )
    except StorageError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"id:     {key.id}")
    print(f"key:    {raw_key}")
    print(f"scopes: {', '.join(key.scopes)}")
    print("\n  Store the key now -- it cannot be shown again.")
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    """One cleanup pass over both quota counters, using the configured retention."""
    settings = _load_settings()
    ledger = QuotaLedger(**_store_kwargs(settings))
    try:
        removed = ledger.cleanup(
            timedelta(hours=settings.rate_limit_retention_hours),
            timedelta(days=settings.monthly_limit_retention_days),
        )
    except StorageError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    finally:
        ledger.close()
    print(f"Removed {removed['rate_limits']} hourly and {removed['monthly_link_limits']} monthly counter rows.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shortlink",
        description="Operator tools for shortlink authentication and quotas.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  AUTH_PROVIDER=local JWT_ALGORITHM=HS256 JWT_SECRET_KEY=... python main.py sign-token user-123
  echo -n 'hunter2' | python main.py hash-secret
  python main.py generate-api-key --user-id user-123 --scope shorten_url
  python main.py cleanup
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("sign-token", help="Sign a bearer token for a user id (local provider only)")
    p.add_argument("user_id", metavar="USER_ID", help="Subject to place in the token")
    p.set_defaults(func=cmd_sign_token)

    p = sub.add_parser("hash-secret", help="Read a secret from stdin and print its argon2id hash")
    p.set_defaults(func=cmd_hash_secret)

    p = sub.add_parser("generate-api-key", help="Generate an API key, optionally storing it for a user")
    p.add_argument("--user-id", metavar="USER_ID", help="Store the key for this existing user")
    p.add_argument(
        "--scope",
        action="append",
        choices=VALID_SCOPES,
        metavar="SCOPE",
        help=f"Scope to grant (repeatable): {', '.join(VALID_SCOPES)}",
    )
    p.set_defaults(func=cmd_generate_api_key)

    p = sub.add_parser("cleanup", help="Delete expired hourly and monthly quota windows")
    p.set_defaults(func=cmd_cleanup)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
