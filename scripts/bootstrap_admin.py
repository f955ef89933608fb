#!/usr/bin/env python3
"""Bootstrap an administrator principal.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password (at least 12 characters, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "ADMIN"
ADMIN_PERMISSIONS = (
    "user:read",
    "user:write",
    "user:logout-all",
    "role:manage",
    "security:audit:read",
)


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def ensure_admin_role(store) -> None:
    role = store.get_role(ADMIN_ROLE)
    if role is None:
        store.create_role(ADMIN_ROLE, "Full administrative access", ADMIN_PERMISSIONS)
        return
    for permission in ADMIN_PERMISSIONS:
        if permission not in role.permission_names:
            store.grant_permission(ADMIN_ROLE, permission)


async def bootstrap_admin(email: str, password: str, dry_run: bool = False, runtime=None) -> dict:
    """Create or promote an admin principal.

    Returns:
        dict with principal_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    if runtime is None:
        # Deferred so env vars set by main() are seen by Settings
        from authbase.service.runtime import get_runtime

        runtime = get_runtime()

    existing = runtime.store.get_principal_by_email(email)

    if existing:
        if ADMIN_ROLE in existing.role_names:
            if not dry_run:
                ensure_admin_role(runtime.store)
            print(f"Principal {email} already holds {ADMIN_ROLE} (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing principal {email} to {ADMIN_ROLE}")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}
        ensure_admin_role(runtime.store)
        runtime.store.assign_role(existing.id, ADMIN_ROLE)
        print(f"Promoted existing principal {email} to {ADMIN_ROLE} (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin principal: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    ensure_admin_role(runtime.store)
    principal = runtime.store.create_principal(
        email,
        runtime.hasher.hash(password),
        email_verified=True,
        roles=[ADMIN_ROLE],
    )
    print(f"Created admin principal: {email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": principal.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for authbase",
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
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # Seeding never touches the blacklist
    os.environ.setdefault("REDIS_ENABLED", "false")
    os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting principal promoted to admin!")


if __name__ == "__main__":
    main()
