#!/usr/bin/env python3
"""Bootstrap a tenant and its first administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        TENANT_NAME=Acme TENANT_SUBDOMAIN=acme python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --tenant-name Acme --subdomain acme

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator (must meet strength requirements)
    TENANT_NAME / TENANT_SUBDOMAIN: Tenant to create or reuse
    STORE_BACKEND / DATABASE_URL: Where to write (memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    tenant_name: str,
    subdomain: str,
    *,
    role: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Create (or reuse) the principal and tenant and grant ``role``.

    Returns:
        dict with principal_id, tenant_id and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.passwords import password_problems
    from tenantauth.service.runtime import get_runtime

    problems = password_problems(password)
    if problems:
        raise ValueError("; ".join(problems))

    runtime = get_runtime()
    store = runtime.store
    principal = store.get_principal_by_email(email)
    tenant = next(
        (
            m
            for m in (store.list_memberships_for_principal(principal.id) if principal else [])
            if m.tenant_subdomain == subdomain
        ),
        None,
    )
    if tenant is not None and tenant.role == role:
        print(f"{email} already holds {role} in {subdomain}")
        return {
            "principal_id": principal.id,
            "tenant_id": tenant.tenant_id,
            "status": "unchanged",
        }

    if dry_run:
        action = "grant" if principal else "create and grant"
        print(f"[DRY RUN] Would {action} {role} for {email} in {subdomain}")
        return {
            "principal_id": principal.id if principal else None,
            "tenant_id": None,
            "status": "dry_run",
        }

    status = "updated"
    if principal is None:
        principal = store.create_principal(email, runtime.credentials.hash(password))
        status = "created"
    created_tenant = store.create_tenant(tenant_name, subdomain) if tenant is None else None
    tenant_id = created_tenant.id if created_tenant else tenant.tenant_id
    store.add_membership(principal.id, tenant_id, role)

    print(f"Granted {role} in {subdomain} to {email} (id: {principal.id})")
    return {"principal_id": principal.id, "tenant_id": tenant_id, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant administrator for tenantauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--tenant-name", default=os.environ.get("TENANT_NAME"))
    parser.add_argument("--subdomain", default=os.environ.get("TENANT_SUBDOMAIN"))
    parser.add_argument("--role", default="admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    missing = [
        flag
        for flag, value in (
            ("--email", args.email),
            ("--password", args.password),
            ("--tenant-name", args.tenant_name),
            ("--subdomain", args.subdomain),
        )
        if not value
    ]
    if missing:
        print(f"Error: missing {', '.join(missing)}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Note: Using in-memory store (set STORE_BACKEND=postgres and DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            args.tenant_name,
            args.subdomain,
            role=args.role,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\nStatus: {result['status']}")
    print(f"  Principal ID: {result['principal_id']}")
    print(f"  Tenant ID: {result['tenant_id']}")


if __name__ == "__main__":
    main()
