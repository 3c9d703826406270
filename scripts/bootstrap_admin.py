#!/usr/bin/env python3
"""Bootstrap an ADMIN_USER account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

ADMIN_ROLES = ["FREE_USER", "ADMIN_USER"]


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account. Existing accounts are never modified.

    Returns:
        dict with user_id, username, and status
        ('created', 'already_admin', 'exists' or 'dry_run')
    """
    # Imported late so the env defaults set in main() are seen by settings
    from bloggerhub.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)

    if existing:
        if "ADMIN_USER" in existing.roles:
            print(f"User {username} already has ADMIN_USER (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        print(f"Error: user {username} already exists without ADMIN_USER (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.auth.create_user(username, email, password, roles=ADMIN_ROLES)
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for BloggerHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    for flag in ("username", "email", "password"):
        if not getattr(args, flag):
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            return 1

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/bloggerhub-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.username, args.email.strip().lower(), args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("       Pick another username; roles of existing accounts are not changed.")
        return 1
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
