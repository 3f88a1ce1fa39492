#!/usr/bin/env python3
"""Create a verified ADMIN principal for initial setup.

Administrators cannot self-register through the API, so the first one is
created here.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password (8+ characters with an uppercase letter and a digit)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False, store=None) -> dict:
    """Create a verified ADMIN unless the email is already registered.

    Returns:
        dict with user_id, email, and status ('created', 'already_admin', 'dry_run')
    """
    # Imported late so the environment defaults below apply to Settings
    from junicore.api.schemas import _validate_email, _validate_password_strength
    from junicore.config import get_settings
    from junicore.service.passwords import ALGO, CredentialStore
    from junicore.storage.memory import MemoryStore
    from junicore.storage.models import Role
    from junicore.storage.postgres import PostgresStore

    settings = get_settings()
    email = _validate_email(email)
    _validate_password_strength(password)
    if store is None:
        store = (
            MemoryStore(fs_root=settings.shared_fs_root)
            if settings.use_memory_store
            else PostgresStore(settings.database_url)
        )

    existing = store.get_user_by_email(email)
    if existing:
        if existing.role == Role.ADMIN:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        raise RuntimeError(
            f"{email} is already registered with role {existing.role.value}; refusing to promote"
        )

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    credentials = CredentialStore(
        time_cost=settings.password_hash_time_cost,
        memory_cost=settings.password_hash_memory_kib,
    )
    principal = store.create_user(email, Role.ADMIN, email_verified=True)
    store.save_password(principal.id, credentials.hash(password), ALGO)
    print(f"Created admin user: {email} (id: {principal.id})")
    return {"user_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for junicore",
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

    # Signing secrets are required by Settings but unused here
    os.environ.setdefault("JWT_ACCESS_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("JWT_REFRESH_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/junicore-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
