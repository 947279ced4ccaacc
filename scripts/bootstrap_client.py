#!/usr/bin/env python3
"""Register an OAuth client and, optionally, a first user.

Usage:
    # Machine client; a secret is generated and printed once:
    python scripts/bootstrap_client.py --client-id billing-worker --client-type machine --scope "billing:read"

    # Confidential client plus a user:
    CLIENT_ID=web python scripts/bootstrap_client.py --user-email ops@example.com --user-password 'Str0ng-Passphrase!'

Environment Variables:
    CLIENT_ID, CLIENT_TYPE, CLIENT_SCOPES: defaults for the matching flags
    USER_EMAIL, USER_PASSWORD: create a user alongside the client
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from lockbox.service.runtime import Runtime

    runtime = Runtime()
    result: dict = {"client_id": args.client_id}
    try:
        existing = await asyncio.to_thread(runtime.store.get_client, args.client_id)
        if existing:
            print(f"Client {args.client_id} already exists ({existing.client_type})")
            result["client_status"] = "exists"
        elif args.dry_run:
            print(f"[DRY RUN] Would register {args.client_type} client {args.client_id}")
            result["client_status"] = "dry_run"
        else:
            client, secret = await runtime.tokens.register_client(
                args.client_id,
                client_type=args.client_type,
                allowed_scopes=args.scope.split(),
                tenant_id=args.tenant_id,
                client_secret=args.client_secret,
                refresh_token_ttl_days=args.refresh_ttl_days,
            )
            result["client_status"] = "created"
            result["client_secret"] = secret

        if args.user_email:
            email = args.user_email.strip().lower()
            user = await asyncio.to_thread(
                runtime.store.get_user_by_email, email, tenant_id=args.tenant_id
            )
            if user:
                result["user_status"] = "exists"
                result["user_id"] = user.id
            elif args.dry_run:
                result["user_status"] = "dry_run"
            else:
                user = await runtime.auth.create_user(
                    email, args.user_password, tenant_id=args.tenant_id, role=args.role
                )
                result["user_status"] = "created"
                result["user_id"] = user.id
    finally:
        await runtime.close()
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Register a Lockbox OAuth client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", default=os.environ.get("CLIENT_ID"))
    parser.add_argument(
        "--client-type",
        default=os.environ.get("CLIENT_TYPE", "confidential"),
        choices=["confidential", "public", "machine"],
    )
    parser.add_argument("--client-secret", default=os.environ.get("CLIENT_SECRET"))
    parser.add_argument(
        "--scope",
        default=os.environ.get("CLIENT_SCOPES", "profile email"),
        help="Space separated list of scopes the client may request",
    )
    parser.add_argument("--refresh-ttl-days", type=int, default=None)
    parser.add_argument("--tenant-id", default=os.environ.get("DEFAULT_TENANT_ID", "public"))
    parser.add_argument("--user-email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--user-password", default=os.environ.get("USER_PASSWORD"))
    parser.add_argument("--role", default="user")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.client_id:
        print("Error: --client-id or CLIENT_ID environment variable required")
        sys.exit(1)

    if args.user_email and not args.user_password:
        print("Error: --user-password or USER_PASSWORD is required with --user-email")
        sys.exit(1)

    if args.user_password and not validate_password(args.user_password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/lockbox-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result.get("client_status") == "created":
        print(f"\nClient registered: {result['client_id']}")
        if result.get("client_secret"):
            print(f"  Client secret (shown once): {result['client_secret']}")
    if result.get("user_status") == "created":
        print(f"User created: {args.user_email} (id: {result['user_id']})")
    elif result.get("user_status") == "exists":
        print(f"User already exists: {args.user_email} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
