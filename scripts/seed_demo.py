#!/usr/bin/env python3
"""Seed the demo administrator account used by ``POST /api/auth/demo-login``.

Usage:
    # Using environment variables:
    DEMO_USERNAME=demo_admin DEMO_PASSWORD=ChangeMe-2024 python scripts/seed_demo.py

    # Or with command line args:
    python scripts/seed_demo.py --username demo_admin --password ChangeMe-2024

Environment Variables:
    DEMO_USERNAME: Username of the demo account (default: demo_admin)
    DEMO_PASSWORD: Local password for the demo account (argon2id hashed)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

MIN_PASSWORD_LENGTH = 8


def seed_demo(store, verifier, username: str, password: str, dry_run: bool = False) -> dict:
    """Create the demo account, or promote and re-key an existing one.

    Re-keying an existing account signs out every session it already holds.

    Returns:
        dict with user_id, username, and status
        ('created', 'updated', 'already_admin' or 'dry_run')
    """
    from portalauth.storage.models import ROLE_ADMIN

    existing = store.get_user_by_username(username)
    if existing:
        if existing.role == ROLE_ADMIN and existing.password_hash:
            print(f"User {username} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {username} to admin")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        store.update_user_role(existing.id, ROLE_ADMIN)
        store.save_password(existing.id, verifier.hash_password(password))
        revoked = store.revoke_user_sessions(existing.id)
        print(f"Promoted existing user {username} to admin (id: {existing.id})")
        if revoked:
            print(f"Revoked {revoked} session(s) issued before the password change")
        return {"user_id": existing.id, "username": username, "status": "updated"}

    if dry_run:
        print(f"[DRY RUN] Would create demo admin: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = store.create_user(
        username,
        password_hash=verifier.hash_password(password),
        role=ROLE_ADMIN,
        first_name="Demo",
        last_name="Administrator",
        email=f"{username}@example.com",
        department="Administration",
        position="System Administrator",
    )
    print(f"Created demo admin: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed the portal demo administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("DEMO_USERNAME", "demo_admin"),
        help="Demo username (or set DEMO_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("DEMO_PASSWORD"),
        help="Demo password (or set DEMO_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.password:
        print("Error: --password or DEMO_PASSWORD environment variable required")
        sys.exit(1)
    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/portalauth-seed")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Imported late so the environment above is in place before settings load
    from portalauth.config import get_settings
    from portalauth.service.auth import CredentialVerifier
    from portalauth.storage.memory import MemoryStore
    from portalauth.storage.postgres import PostgresStore

    settings = get_settings()
    if settings.use_memory_store:
        store = MemoryStore(fs_root=settings.shared_fs_root)
    else:
        store = PostgresStore(settings.database_url)

    try:
        result = seed_demo(store, CredentialVerifier(store), args.username, args.password, args.dry_run)
    finally:
        if hasattr(store, "close"):
            store.close()

    if result["status"] == "created":
        print("\nDemo account created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "updated":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
