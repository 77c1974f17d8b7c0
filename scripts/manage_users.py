#!/usr/bin/env python3
"""Administer portal accounts outside the registration wizard.

Usage:
    # Create an administrator (prints the authenticator key and backup codes once):
    ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/manage_users.py create-admin \
        --email admin@example.mil --full-name "Duty Admin" --mobile +911234567890

    # Suspend, restore or unlock an account by email:
    python scripts/manage_users.py deactivate --email user@example.mil
    python scripts/manage_users.py activate --email user@example.mil
    python scripts/manage_users.py unlock --email user@example.mil

    # List accounts, optionally for one role:
    python scripts/manage_users.py list --role personnel

Environment Variables:
    ADMIN_PASSWORD: Password for create-admin (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_admin(runtime, email: str, full_name: str, mobile: str, password: str, dry_run: bool = False) -> dict:
    """Create a verified administrator with a freshly enrolled authenticator.

    Returns:
        dict with user_id, email, status and, when created, the one-time
        enrolment material (manual key, otpauth URI, backup codes)
    """
    from sentinelid.service.errors import ValidationError
    from sentinelid.service.validation import (
        normalize_email,
        normalize_mobile,
        normalize_unicode,
    )
    from sentinelid.storage.models import NewUser

    email = normalize_email(email)
    mobile = normalize_mobile(mobile)
    full_name = " ".join(normalize_unicode(full_name or "").split())
    if not full_name:
        raise ValidationError("Full name is required", detail={"fields": ["full_name"]})
    violation = runtime.passwords.policy_violation(password or "")
    if violation:
        raise ValidationError(violation, error_code="INVALID_PASSWORD")

    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists with role {existing.role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    secret = runtime.totp.generate_secret()
    backup_codes, backup_hashes = runtime.totp.generate_backup_codes()
    user = runtime.store.create_user(
        NewUser(
            full_name=full_name,
            email=email,
            mobile=mobile,
            identifier=email,
            role="admin",
            password_hash=runtime.passwords.hash(password),
            mfa_method="totp",
            totp_secret=runtime.cipher.encrypt(secret),
            backup_codes=backup_hashes,
        )
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": email,
        "status": "created",
        "manual_entry_key": secret,
        "otpauth_uri": runtime.totp.provisioning_uri(secret, email),
        "backup_codes": backup_codes,
    }


def _require_user(runtime, email: str):
    from sentinelid.service.errors import NotFoundError
    from sentinelid.service.validation import normalize_email

    user = runtime.store.get_user_by_email(normalize_email(email))
    if not user:
        raise NotFoundError(f"No account registered for {email}")
    return user


def set_active(runtime, email: str, active: bool) -> dict:
    """Activate or deactivate an account; deactivation also revokes its refresh tokens."""
    from sentinelid.logging import audit_event

    user = _require_user(runtime, email)
    runtime.store.set_user_active(user.id, active)
    revoked = 0
    if not active:
        revoked = runtime.store.revoke_user_refresh_tokens(user.id)
    action = "account_activate" if active else "account_deactivate"
    audit_event(action, "success", user_id=user.id, revoked=revoked, actor="cli")
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "activated" if active else "deactivated",
        "revoked": revoked,
    }


def unlock(runtime, email: str) -> dict:
    from sentinelid.logging import audit_event

    user = _require_user(runtime, email)
    runtime.store.unlock_user(user.id)
    audit_event("account_unlock", "success", user_id=user.id, actor="cli")
    return {"user_id": user.id, "email": user.email, "status": "unlocked"}


def list_accounts(runtime, role: Optional[str] = None, limit: int = 100) -> List[dict]:
    """Summarise accounts, oldest first, optionally for one role."""
    from sentinelid.service.validation import normalize_role

    users = runtime.store.list_users(role=normalize_role(role) if role else None, limit=limit)
    return [
        {
            "user_id": user.id,
            "email": user.email,
            "role": user.role,
            "identifier": user.identifier,
            "active": user.is_active,
            "locked": user.is_locked() or user.is_mfa_locked(),
        }
        for user in users
    ]


def main():
    parser = argparse.ArgumentParser(
        description="Manage SentinelID portal accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-admin", help="Create an administrator account")
    create.add_argument("--email", required=True, help="Admin email, also used as identifier")
    create.add_argument("--full-name", required=True)
    create.add_argument("--mobile", required=True)
    create.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    create.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    for name, help_text in (
        ("activate", "Re-enable a deactivated account"),
        ("deactivate", "Disable an account and revoke its refresh tokens"),
        ("unlock", "Clear failed attempts and any lockout"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--email", required=True)

    listing = commands.add_parser("list", help="List accounts, oldest first")
    listing.add_argument("--role", help="Only accounts registered under this role")
    listing.add_argument("--limit", type=int, default=100)

    args = parser.parse_args()

    if args.command == "create-admin" and not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # One-shot command; no shared rate limits involved
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from sentinelid.service.errors import ServiceError
    from sentinelid.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if args.command == "list":
            for account in list_accounts(runtime, args.role, args.limit):
                flags = [] if account["active"] else ["inactive"]
                if account["locked"]:
                    flags.append("locked")
                print(
                    f"{account['user_id']}  {account['role']:<9}  {account['identifier']:<16}  "
                    f"{account['email']}  {','.join(flags)}".rstrip()
                )
            return
        if args.command == "create-admin":
            result = create_admin(
                runtime, args.email, args.full_name, args.mobile, args.password, args.dry_run
            )
        elif args.command == "unlock":
            result = unlock(runtime, args.email)
        else:
            result = set_active(runtime, args.email, args.command == "activate")
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Authenticator key: {result['manual_entry_key']}")
        print(f"  Provisioning URI: {result['otpauth_uri']}")
        print("  Backup codes (shown once):")
        for code in result["backup_codes"]:
            print(f"    {code}")
    elif result["status"] not in {"exists", "dry_run"}:
        print(f"{result['email']}: {result['status']}")


if __name__ == "__main__":
    main()
