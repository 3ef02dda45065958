#!/usr/bin/env python3
"""Bootstrap an owner account and its organization.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePass123 OWNER_ORG="Acme" python scripts/bootstrap_owner.py

    # Or with command line args:
    python scripts/bootstrap_owner.py --email owner@example.com --password SecurePass123 --org Acme

Environment Variables:
    OWNER_EMAIL: Email for the owner user
    OWNER_PASSWORD: Password (8+ characters with lower, upper and digit)
    OWNER_NAME: Display name (defaults to the email local part)
    OWNER_ORG: Organization name
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


async def bootstrap_owner(
    email: str,
    password: str,
    name: str,
    organization: str,
    *,
    dry_run: bool = False,
) -> dict:
    """Register ``email`` as OWNER of a new organization.

    Returns:
        dict with user_id, email, org_slug and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {email} as owner of '{organization}'")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, name, organization)
    await runtime.emails.drain()
    org = result.organization
    print(f"Created owner: {email} (id: {result.user.id}) of {org.slug}")
    return {
        "user_id": result.user.id,
        "email": email,
        "org_id": org.id,
        "org_slug": org.slug,
        "status": "created",
        "access_token": result.tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an organization owner for TenantAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
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
        "--name",
        default=os.environ.get("OWNER_NAME"),
        help="Display name (or set OWNER_NAME env var)",
    )
    parser.add_argument(
        "--org",
        default=os.environ.get("OWNER_ORG"),
        help="Organization name (or set OWNER_ORG env var)",
    )
    parser.add_argument(
        "--ensure-schema",
        action="store_true",
        help="Create the Postgres tables before bootstrapping",
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
    if not args.org:
        print("Error: --org or OWNER_ORG environment variable required")
        sys.exit(1)
    name = args.name or args.email.split("@", 1)[0]

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    elif args.ensure_schema:
        from tenantauth.storage.postgres import PostgresStore

        PostgresStore(os.environ["DATABASE_URL"], ensure_schema=True).pool.close()

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tenantauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_owner(args.email, args.password, name, args.org, dry_run=args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOwner created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Organization: {result['org_slug']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes made - the user already exists.")


if __name__ == "__main__":
    main()
