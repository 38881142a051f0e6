#!/usr/bin/env python3
"""Bootstrap an admin identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity (must meet the password policy)
    ADMIN_NAME: Display name (defaults to "Administrator")
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


def promote_to_admin(runtime, identity_id: str) -> None:
    from verigate.service.audit import AuditEvent
    from verigate.service.mutation import mutate_identity
    from verigate.storage.models import AuditAction, Role

    def _apply(identity) -> None:
        identity.record_change("role", identity.role, Role.ADMIN.value, changed_by="bootstrap")
        identity.role = Role.ADMIN.value

    mutate_identity(runtime.store, identity_id, _apply)
    runtime.identity.audit.record(
        AuditEvent(
            AuditAction.ADMIN_ACTION,
            "identity promoted to admin by bootstrap script",
            actor_id=identity_id,
            details={"operation": "promote", "target_id": identity_id},
        )
    )


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create an admin identity or promote an existing one.

    Returns:
        dict with identity_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from verigate.service.runtime import get_runtime
    from verigate.service.schemas import validate_email

    runtime = get_runtime()
    email = validate_email(email)

    existing = runtime.store.get_identity_by_email(email)
    if existing:
        if existing.role == "admin":
            print(f"Identity {email} already exists as admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing identity {email} to admin")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}

        promote_to_admin(runtime, existing.id)
        print(f"Promoted existing identity {email} to admin (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    result = runtime.identity.register(name, email, password)
    if not result.ok:
        raise RuntimeError(f"{result.error.code}: {result.error.message}")
    identity_id = result.value.identity_id
    promote_to_admin(runtime, identity_id)

    print(f"Created admin identity: {email} (id: {identity_id})")
    return {
        "identity_id": identity_id,
        "email": email,
        "status": "created",
        "pending_verifications": result.value.pending_verifications,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for Verigate",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name (or set ADMIN_NAME env var)",
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

    from verigate.service.schemas import validate_password_strength

    try:
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("STATE_ROOT"):
        os.environ["STATE_ROOT"] = "/tmp/verigate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"Note: Using file-backed memory store under {os.environ['STATE_ROOT']}")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)

        if result["status"] == "created":
            print("\nAdmin identity created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Identity ID: {result['identity_id']}")
            print("  A verification message has been sent to the email address.")
        elif result["status"] == "promoted":
            print("\nExisting identity promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - identity is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
