#!/usr/bin/env python3
"""Create a student or faculty login for local testing.

Usage:
    # Using environment variables:
    SEED_EMAIL=student@example.com SEED_PASSWORD=changeme python scripts/seed_user.py

    # Or with command line args:
    python scripts/seed_user.py --role faculty --email prof@example.com --password changeme --name "Dr. Rao"

Environment Variables:
    SEED_EMAIL: Login email for the new user
    SEED_PASSWORD: Plaintext password, stored as an argon2 hash
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


def seed_user(
    role: str,
    email: str,
    password: str,
    name: str,
    *,
    department_id: int | None = None,
    class_id: int | None = None,
    dry_run: bool = False,
) -> dict:
    """Insert a user unless one with the same email already exists.

    Returns:
        dict with user_id, email, role and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from collegeportal.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_user_by_email(role, email)
    if existing:
        print(f"User {email} already exists as {role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "role": role, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = runtime.store.create_user(
        role,
        name=name,
        email=email,
        password_hash=runtime.auth.hash_password(password),
        department_id=department_id,
        class_id=class_id if role == "student" else None,
    )
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a college portal login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--role",
        choices=["student", "faculty"],
        default="student",
        help="Which user table to insert into",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="Login email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Test User", help="Display name")
    parser.add_argument("--department-id", type=int, default=None)
    parser.add_argument("--class-id", type=int, default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = seed_user(
            args.role,
            args.email,
            args.password,
            args.name,
            department_id=args.department_id,
            class_id=args.class_id,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Role: {result['role']}")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
