#!/usr/bin/env python3
"""Register an OAuth client and optionally bootstrap an admin user.

Usage:
    # Public first-party single-page app:
    python scripts/register_client.py --client-id web --name "Web" \
        --redirect-uri https://app.example.com/cb --first-party

    # Confidential third-party client (secret is printed once, stored hashed):
    python scripts/register_client.py --client-id partner --name "Partner" \
        --redirect-uri https://partner.example.com/cb --confidential

    # Create or promote an admin at the same time:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/register_client.py --client-id web --name Web \
        --redirect-uri https://app.example.com/cb --first-party --admin

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    ADMIN_EMAIL / ADMIN_PASSWORD: admin account for --admin
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def register_client(
    client_id: str,
    name: str,
    redirect_uris: List[str],
    *,
    first_party: bool = False,
    confidential: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or update an OAuth client.

    Returns:
        dict with client_id, status and, for new confidential clients, the
        plaintext secret (never stored)
    """
    # Import here to avoid loading config before env vars are set
    from argon2 import PasswordHasher, Type

    from authcore.service.runtime import get_runtime
    from authcore.storage.models import OAuthClient

    runtime = get_runtime()
    existing = runtime.store.get_client(client_id)
    status = "updated" if existing else "created"
    if dry_run:
        print(f"[DRY RUN] Would {status[:-1]} client {client_id} -> {', '.join(redirect_uris)}")
        return {"client_id": client_id, "status": "dry_run"}

    secret: Optional[str] = None
    secret_hash = existing.client_secret_hash if existing else None
    if confidential and not secret_hash:
        secret = secrets.token_urlsafe(32)
        secret_hash = PasswordHasher(type=Type.ID).hash(secret)

    client = OAuthClient(
        client_id=client_id,
        name=name,
        redirect_uris=redirect_uris,
        is_first_party=first_party,
        is_public=not confidential,
        client_secret_hash=secret_hash if confidential else None,
    )
    runtime.store.upsert_client(client)
    print(f"Client {client_id} {status} (first_party={first_party}, public={not confidential})")
    return {"client_id": client_id, "status": status, "client_secret": secret}


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin user, or promote an existing one."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, "admin")
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, role="admin", email_verified=True)
    runtime.credentials.set_password(user.id, password)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Register an OAuth client with authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", required=True, help="OAuth client_id")
    parser.add_argument("--name", required=True, help="Display name shown on consent screens")
    parser.add_argument(
        "--redirect-uri",
        action="append",
        required=True,
        dest="redirect_uris",
        help="Exact redirect URI; repeat for several",
    )
    parser.add_argument(
        "--first-party",
        action="store_true",
        help="Skip the consent prompt for this client",
    )
    parser.add_argument(
        "--confidential",
        action="store_true",
        help="Generate a client secret (stored as an Argon2 hash)",
    )
    parser.add_argument(
        "--admin",
        action="store_true",
        help="Also create or promote ADMIN_EMAIL to admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    admin_email = os.environ.get("ADMIN_EMAIL")
    admin_password = os.environ.get("ADMIN_PASSWORD")
    if args.admin:
        if not admin_email or not admin_password:
            print("Error: --admin needs ADMIN_EMAIL and ADMIN_PASSWORD")
            sys.exit(1)
        if not validate_password(admin_password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            print("       (uppercase, lowercase, digits, special characters)")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authcore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = register_client(
            args.client_id,
            args.name,
            args.redirect_uris,
            first_party=args.first_party,
            confidential=args.confidential,
            dry_run=args.dry_run,
        )
        if result.get("client_secret"):
            print("\nClient secret (shown once, store it now):")
            print(f"  {result['client_secret']}")
        if args.admin:
            admin = bootstrap_admin(admin_email, admin_password, args.dry_run)
            if admin["status"] == "created":
                print(f"\nAdmin user created: {admin['email']} ({admin['user_id']})")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
