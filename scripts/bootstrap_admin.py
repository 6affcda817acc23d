#!/usr/bin/env python3
"""Create or promote the first administrator account.

Usage:
    ADMIN_USERNAME=admin ADMIN_PASSWORD='Sup3r-Secret-Pass!' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --username admin --email ops@example.com --password ...

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Optional email, used for password resets
    ADMIN_PASSWORD: Password (checked against the configured password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str, password: str, email: Optional[str] = None, dry_run: bool = False
) -> dict:
    """Create the admin, or promote an existing account with that username.

    Returns:
        dict with user_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so environment defaults are in place before settings load
    from timekeeper.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin")
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.auth.create_user(username, password, email=email, role="admin")
    return {"user_id": user.id, "username": username, "status": "created"}


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from timekeeper.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.username, args.password, args.email, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for violation in exc.detail.get("violations", []):
            print(f"  - {violation}")
        return 1

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed - account is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['username']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
