#!/usr/bin/env python3
"""Create or promote an admin account (the only role allowed to impersonate).

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (12+ chars, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Allow running from a checkout without installing
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


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns a dict with user_id, email and status
    (``created``, ``promoted``, ``already_admin`` or ``dry_run``).
    """
    # Imported late so the environment below is in place before settings load
    from authkeep.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.directory.find_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, "admin")
        return {"user_id": existing_user.id, "email": existing_user.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, _ = runtime.directory.create_user(email, password, role="admin")
    runtime.store.mark_email_verified(user.id)
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for authkeep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        return 1

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authkeep-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
