#!/usr/bin/env python3
"""Create the first administrator account.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password 'Str0ng!Pass' --full-name "System Administrator"

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: account to create
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE + MEMORY_STORE_PATH: JSON-backed store instead of PostgreSQL
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    full_name: str,
    *,
    dry_run: bool = False,
) -> dict:
    """Create an admin whose password is already final (no forced change)."""
    # Imported late so the environment above is read by Settings
    from ehrguard.config import get_settings
    from ehrguard.service.identity import LocalIdentityProvider, password_policy_errors
    from ehrguard.storage.memory import MemoryStore
    from ehrguard.storage.postgres import PostgresStore

    errors = password_policy_errors(password)
    if errors:
        raise ValueError("; ".join(errors))

    settings = get_settings()
    store = (
        MemoryStore(state_path=settings.memory_store_path)
        if settings.use_memory_store
        else PostgresStore(settings.database_url)
    )
    try:
        existing = store.find_user_by_login(username) or store.find_user_by_login(email)
        if existing:
            print(f"User {existing.username} already exists (id: {existing.id})")
            return {"user_id": existing.id, "username": existing.username, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would create admin user: {username} <{email}>")
            return {"user_id": None, "username": username, "status": "dry_run"}

        identity = LocalIdentityProvider(store, settings)
        user, _ = identity.create_user(
            username, email, "admin", full_name=full_name, temporary_password=password
        )
        store.set_force_password_change(user.id, False)
        print(f"Created admin user: {username} (id: {user.id})")
        return {"user_id": user.id, "username": username, "status": "created"}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for EHR Guard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--full-name", default=os.environ.get("ADMIN_FULL_NAME", "Administrator"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: set DATABASE_URL, or USE_MEMORY_STORE=true with MEMORY_STORE_PATH")
        sys.exit(1)

    try:
        result = bootstrap_admin(
            args.username, args.email, args.password, args.full_name, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        print("  Sign-in requires an email verification code (admin is an MFA role).")


if __name__ == "__main__":
    main()
