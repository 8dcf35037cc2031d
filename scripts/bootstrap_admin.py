#!/usr/bin/env python3
"""Bootstrap an admin user for initial setup.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str, password: str, full_name: str | None = None, dry_run: bool = False
) -> dict:
    """Create an admin user, or promote an existing account to admin."""
    # Imported late so the environment below is in place before settings load
    from dancestudio.service.runtime import get_runtime
    from dancestudio.storage.models import UserRole

    runtime = get_runtime()
    try:
        existing_user = await runtime.store.get_user_by_email(email)

        if existing_user:
            if existing_user.role == UserRole.ADMIN:
                print(f"User {email} already exists as admin (id: {existing_user.id})")
                return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
            await runtime.store.update_user_role(existing_user.id, UserRole.ADMIN)
            print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.store.create_user(
            email,
            full_name=full_name,
            role=UserRole.ADMIN,
            password_hash=runtime.auth.hash_password(password),
            is_verified=True,
        )
        print(f"Created admin user: {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the dance studio",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
    parser.add_argument("--full-name", default=None, help="Display name for the admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/dancestudio-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.full_name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
