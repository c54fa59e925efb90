#!/usr/bin/env python3
"""Bootstrap a platform admin user for initial setup.

Platform admins may switch their session into any organization without
holding a membership there. They sign in like everyone else, with a
one-time code sent to their email.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, name: str, last_name: str, dry_run: bool = False) -> dict:
    """Create a verified platform admin, or promote the user owning ``email``.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from orgauth.service.runtime import get_runtime
    from orgauth.storage.models import USER_ROLE_ADMIN, USER_STATUS_VERIFIED, UserUpdate

    runtime = get_runtime()
    directory = runtime.directory

    existing_user = directory.get_user_by_email(email)

    if existing_user:
        if existing_user.is_platform_admin:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        directory.update_user(
            existing_user.id, UserUpdate(role=USER_ROLE_ADMIN, status=USER_STATUS_VERIFIED)
        )
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": email,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = directory.create_user(
        name,
        last_name,
        email=email,
        role=USER_ROLE_ADMIN,
        status=USER_STATUS_VERIFIED,
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform admin user for OrgAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--name", default="Platform", help="Admin first name")
    parser.add_argument("--last-name", default="Admin", help="Admin last name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    email = args.email.strip().lower()
    if "@" not in email:
        print("Error: --email must be an email address")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/orgauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # The directory is all this script touches
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(email, args.name, args.last_name, args.dry_run)

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
