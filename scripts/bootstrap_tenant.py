#!/usr/bin/env python3
"""Create a tenant and optionally issue an invitation code.

Usage:
    # Create a tenant with a generated API key:
    python scripts/bootstrap_tenant.py --name acme

    # Supply the key and issue one admin invitation code:
    TENANT_API_KEY=acme-key python scripts/bootstrap_tenant.py --name acme --invite

Environment Variables:
    TENANT_API_KEY: API key for the new tenant (generated when unset)
    DATABASE_URL: PostgreSQL connection string (memory store under SHARED_FS_ROOT if not set)
    SHARED_FS_ROOT: Root for the TTL cache and the memory store's state file
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_tenant(
    name: str,
    api_key: str,
    description: str | None = None,
    *,
    invite: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the tenant unless ``api_key`` already belongs to one.

    Returns:
        dict with tenant_id, name, status and, when requested, invitation_code
    """
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.errors import ConflictError
    from tenantauth.service.runtime import get_runtime
    from tenantauth.storage.errors import ConstraintViolation

    runtime = get_runtime()
    try:
        existing = runtime.store.get_tenant_by_api_key(api_key)
        if existing is not None:
            print(f"Tenant {existing.name} already uses this API key (id: {existing.id})")
            result = {"tenant_id": existing.id, "name": existing.name, "status": "exists"}
        elif dry_run:
            print(f"[DRY RUN] Would create tenant: {name}")
            return {"tenant_id": None, "name": name, "status": "dry_run"}
        else:
            try:
                tenant = runtime.store.create_tenant(
                    name, api_key=api_key, description=description
                )
            except ConstraintViolation as exc:
                raise ConflictError(f"Tenant {name} already exists") from exc
            print(f"Created tenant: {name} (id: {tenant.id})")
            result = {"tenant_id": tenant.id, "name": name, "status": "created"}

        if invite:
            result["invitation_code"] = runtime.invitations.issue()
        return result
    finally:
        runtime.close_sync()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant for tenantauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Tenant name (unique)")
    parser.add_argument(
        "--api-key",
        default=os.environ.get("TENANT_API_KEY"),
        help="Tenant API key (or set TENANT_API_KEY env var)",
    )
    parser.add_argument("--description", default=None, help="Free-form description")
    parser.add_argument(
        "--invite",
        action="store_true",
        help="Also issue one invitation code for an elevated-role registration",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tenantauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT")

    try:
        result = bootstrap_tenant(
            args.name,
            api_key,
            args.description,
            invite=args.invite,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant created successfully!")
        print(f"  Name: {result['name']}")
        print(f"  Tenant ID: {result['tenant_id']}")
        if not args.api_key:
            print(f"  API Key: {api_key}")
    if result.get("invitation_code"):
        print(f"  Invitation Code: {result['invitation_code']}")


if __name__ == "__main__":
    main()
