#!/usr/bin/env python3
"""Bootstrap an ADMIN account for initial setup.

Usage:
    # New tenant owned by the admin:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py --company-name "Acme Inc"

    # Admin for an existing tenant:
    python scripts/bootstrap_admin.py --email admin@example.com \
        --password SecurePassword123! --tenant-id <tenant-id>

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (8 to 128 characters)
    JWT_SECRET: Token signing key (required, at least 32 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    return 8 <= len(password) <= 128


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Administrator",
    tenant_id: Optional[str] = None,
    company_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create an ADMIN account, or promote an existing one.

    Returns:
        dict with account_id, tenant_id, email, and status ('created',
        'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantcrm.service.runtime import get_runtime
    from tenantcrm.storage.common import normalize_email
    from tenantcrm.storage.models import Role

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_account_by_email(email)
    if existing:
        if tenant_id and existing.tenant_id != tenant_id:
            raise ValueError(f"{email} belongs to another tenant")
        base = {"account_id": existing.id, "tenant_id": existing.tenant_id, "email": email}
        if existing.role == Role.ADMIN.value:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {**base, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {**base, "status": "dry_run"}
        runtime.store.update_account_role(existing.id, Role.ADMIN.value)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {**base, "status": "promoted"}

    if tenant_id and not runtime.store.get_tenant(tenant_id):
        raise ValueError(f"tenant {tenant_id} does not exist")

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "tenant_id": tenant_id, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(
        email,
        password,
        name,
        company_name=company_name,
        tenant_id=tenant_id,
        role=Role.ADMIN.value,
    )
    print(f"Created admin account: {email} (id: {result.account.id})")
    return {
        "account_id": result.account.id,
        "tenant_id": result.account.tenant_id,
        "email": email,
        "status": "created",
        "token": result.token.token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for TenantCRM",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
    parser.add_argument("--tenant-id", help="Attach the admin to an existing tenant")
    parser.add_argument("--company-name", help="Name of the tenant to create")
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
        print("Error: Password must be between 8 and 128 characters")
        sys.exit(1)

    if args.tenant_id and args.company_name:
        print("Error: use either --tenant-id or --company-name, not both")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set (at least 32 characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tenantcrm-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                name=args.name,
                tenant_id=args.tenant_id,
                company_name=args.company_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  Tenant ID: {result['tenant_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
