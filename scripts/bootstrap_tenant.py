#!/usr/bin/env python3
"""Create a tenant with its OWNER account, optionally applying the schema first.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=changeme123 \
        python scripts/bootstrap_tenant.py --slug acme --name "Acme Inc"

    # Apply tenantgate/storage/schema.sql to DATABASE_URL before creating the tenant:
    python scripts/bootstrap_tenant.py --apply-schema --slug acme --name "Acme Inc" \
        --email owner@example.com --password changeme123

Environment Variables:
    OWNER_EMAIL: Email for the OWNER user
    OWNER_PASSWORD: Password for the OWNER user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def apply_schema(dsn: str) -> None:
    import psycopg

    from tenantgate.storage.postgres import SCHEMA_PATH

    with psycopg.connect(dsn, autocommit=True) as conn:
        conn.execute(SCHEMA_PATH.read_text())
    print(f"Applied {SCHEMA_PATH.name} to database")


async def bootstrap_tenant(
    slug: str, name: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Register a tenant and its OWNER.

    Returns:
        dict with tenant_id, user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_tenant_by_slug(slug)
    if existing:
        print(f"Tenant {slug} already exists (id: {existing.id})")
        return {"tenant_id": existing.id, "user_id": None, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create tenant {slug} with OWNER {email}")
        return {"tenant_id": None, "user_id": None, "email": email, "status": "dry_run"}

    tenant, issued = await runtime.auth.register(
        email, password, tenant_slug=slug, tenant_name=name
    )
    print(f"Created tenant {tenant.slug} (id: {tenant.id}) with OWNER {email}")
    return {
        "tenant_id": tenant.id,
        "user_id": issued.user.id,
        "email": email,
        "status": "created",
        "access_token": issued.tokens.get("access_token"),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant and OWNER account for tenantgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--slug", required=True, help="Tenant slug (subdomain)")
    parser.add_argument("--name", required=True, help="Tenant display name")
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Apply the bundled schema to DATABASE_URL first",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    elif args.apply_schema:
        apply_schema(os.environ["DATABASE_URL"])

    try:
        result = asyncio.run(
            bootstrap_tenant(args.slug, args.name, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant created successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Owner ID: {result['user_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
