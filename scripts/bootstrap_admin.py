#!/usr/bin/env python3
"""Bootstrap the first back-office admin.

Admin invites require a signed-in admin, so the very first admin account has
to be written directly to the ``admins`` collection. The password is hashed
with the same peppered argon2id hasher the API uses, so ``PIN_PEPPER`` must
match the deployed service.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    FIREBASE_SERVICE_ACCOUNT: Service account JSON (application default credentials otherwise)
    PIN_PEPPER: Server-side pepper shared with the API
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
import uuid
from pathlib import Path

# Add project root to path for imports
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


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin, or set the password of an existing one.

    Returns:
        dict with admin_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from lankaqr.config import get_settings
    from lankaqr.service.credentials import ARGON2_ALGO, CredentialHasher
    from lankaqr.service.invites import require_email
    from lankaqr.storage.common import ADMINS
    from lankaqr.storage.firestore import FirestoreStore
    from lankaqr.storage.memory import MemoryStore

    settings = get_settings()
    address = require_email(email)
    store = MemoryStore() if settings.use_memory_store else FirestoreStore(settings)
    if not settings.pin_pepper:
        print("Warning: PIN_PEPPER is not set; the hash will only verify on unpeppered servers")

    try:
        existing = await store.find_one(ADMINS, {"email": address})
        if dry_run:
            action = "update password for" if existing else "create"
            print(f"[DRY RUN] Would {action} admin {address}")
            return {"admin_id": existing.id if existing else None, "email": address, "status": "dry_run"}

        credential = {
            "passwordHash": await CredentialHasher(settings.pin_pepper).hash(password),
            "passwordHashAlgo": ARGON2_ALGO,
            "passwordSetAt": time.time(),
            "status": "active",
        }
        if existing:
            await store.update(ADMINS, existing.id, credential)
            print(f"Updated password for admin {address} (id: {existing.id})")
            return {"admin_id": existing.id, "email": address, "status": "updated"}

        admin_id = uuid.uuid4().hex
        await store.set(
            ADMINS,
            admin_id,
            {"email": address, "name": "", "created_at": time.time(), **credential},
        )
        print(f"Created admin {address} (id: {admin_id})")
        return {"admin_id": admin_id, "email": address, "status": "created"}
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the LankaQR portal",
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

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created. Sign in at /admin/signin.")
    elif result["status"] == "updated":
        print("\nAdmin password replaced; existing sessions stay valid until they expire.")


if __name__ == "__main__":
    main()
