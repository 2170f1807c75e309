#!/usr/bin/env python3
"""Create or promote the first superadmin of the admin panel.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='S3cure-pass!' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root --email root@example.com \
        --password 'S3cure-pass!' --name "Site Owner"

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: account fields
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_superadmin(
    username: str, email: str, password: str, name: str, dry_run: bool = False
) -> dict:
    # imported late so the environment defaults below are in place first
    from uniupdates.service.runtime import Runtime
    from uniupdates.storage.models import ADMIN_TENANT, SUPERADMIN

    runtime = Runtime()
    try:
        existing = runtime.store.get_account_by_email(ADMIN_TENANT, email)
        if existing is not None:
            if existing.role == SUPERADMIN:
                print(f"{email} is already a superadmin (id: {existing.id})")
                return {"admin_id": existing.id, "email": email, "status": "already_superadmin"}
            if dry_run:
                print(f"[DRY RUN] Would promote {email} to superadmin")
                return {"admin_id": existing.id, "email": email, "status": "dry_run"}
            runtime.admins.update_admin(
                existing.id, {"role": SUPERADMIN, "college_id": None, "password": password}
            )
            print(f"Promoted {email} to superadmin (id: {existing.id})")
            return {"admin_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create superadmin {username} <{email}>")
            return {"admin_id": None, "email": email, "status": "dry_run"}

        created = runtime.admins.create_admin(
            username=username,
            email=email,
            password=password,
            name=name,
            role=SUPERADMIN,
        )
        print(f"Created superadmin {username} <{email}> (id: {created.id})")
        return {"admin_id": created.id, "email": email, "status": "created"}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a superadmin for UniUpdates",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Super Admin"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    missing = [flag for flag in ("username", "email", "password") if not getattr(args, flag)]
    if missing:
        print(f"Error: missing {', '.join('--' + m for m in missing)} (or ADMIN_* env vars)")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/uniupdates-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_superadmin(
            args.username, args.email.strip().lower(), args.password, args.name, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperadmin created. Log in at POST /api/admin/auth/login.")
    elif result["status"] == "promoted":
        print("\nExisting admin promoted; their sessions were revoked.")


if __name__ == "__main__":
    main()
