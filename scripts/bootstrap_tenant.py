#!/usr/bin/env python3
"""Bootstrap a tenant and its first manager.

Usage:
    # Using environment variables:
    TENANT_SLUG=acme TENANT_NAME="Acme Clinic" OWNER_EMAIL=owner@acme.test python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --slug acme --name "Acme Clinic" --owner-email owner@acme.test

    # Also make the same person a platform owner (global, every tenant):
    python scripts/bootstrap_tenant.py --slug acme --owner-email owner@acme.test --platform-owner

The named person receives MANAGER scoped to the new tenant only, so owners of
different tenants cannot act in each other's tenants. Global OWNER is a
platform-wide superuser role and is granted only with --platform-owner, once,
for the operator who runs the platform.

The person signs in through a magic link afterwards; no credential is created
here. Running the script twice changes nothing.

Environment Variables:
    TENANT_SLUG, TENANT_NAME, OWNER_EMAIL: defaults for the matching flags
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_tenant(
    slug: str,
    name: str,
    owner_email: str,
    dry_run: bool = False,
    platform_owner: bool = False,
) -> dict:
    """Create the tenant and grant ``owner_email`` MANAGER within it if missing.

    With ``platform_owner`` the principal also receives the global OWNER role.

    Returns:
        dict with tenant_id, principal_id and per-step status
    """
    # Import here to avoid loading config before env vars are set
    from proagenda.service.roles import Role
    from proagenda.service.runtime import get_runtime
    from proagenda.service.validation import normalize_email, validate_slug

    runtime = get_runtime()
    slug = validate_slug(slug)
    email = normalize_email(owner_email)
    result: dict = {"slug": slug, "email": email, "tenant_id": None, "principal_id": None}

    tenant = runtime.store.get_tenant_by_slug(slug)
    if tenant:
        result["tenant_status"] = "exists"
    elif dry_run:
        print(f"[DRY RUN] Would create tenant {slug!r} ({name})")
        result["tenant_status"] = "dry_run"
    else:
        tenant = runtime.auth.create_tenant(slug, name)
        result["tenant_status"] = "created"
        print(f"Created tenant {slug} (id: {tenant.id})")
    if tenant:
        result["tenant_id"] = tenant.id

    principal = runtime.store.get_principal_by_email(email)
    if principal:
        result["principal_status"] = "exists"
    elif dry_run:
        print(f"[DRY RUN] Would create principal {email}")
        result["principal_status"] = "dry_run"
    else:
        principal = runtime.store.create_principal(
            email, name=email.split("@", 1)[0], tenant_id=tenant.id if tenant else None
        )
        result["principal_status"] = "created"
        print(f"Created principal {email} (id: {principal.id})")

    result["platform_owner_status"] = "skipped"
    if not principal:
        result["role_status"] = "dry_run"
        if platform_owner:
            result["platform_owner_status"] = "dry_run"
        return result
    result["principal_id"] = principal.id
    assignments = runtime.registry.list_assignments(principal.id)

    if tenant and any(
        a.role == Role.MANAGER.value and a.tenant_id == tenant.id for a in assignments
    ):
        result["role_status"] = "already_manager"
    elif dry_run:
        print(f"[DRY RUN] Would grant manager of {slug} to {email}")
        result["role_status"] = "dry_run"
    else:
        runtime.registry.assign(principal.id, Role.MANAGER, tenant.id)
        result["role_status"] = "granted"
        print(f"Granted manager of {slug} to {email}")

    if not platform_owner:
        return result
    if any(a.role == Role.OWNER.value and a.tenant_id is None for a in assignments):
        result["platform_owner_status"] = "already_owner"
    elif dry_run:
        print(f"[DRY RUN] Would grant platform owner to {email}")
        result["platform_owner_status"] = "dry_run"
    else:
        runtime.registry.assign(principal.id, Role.OWNER)
        result["platform_owner_status"] = "granted"
        print(f"Granted platform owner to {email}")
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a ProAgenda tenant and its first manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--slug", default=os.environ.get("TENANT_SLUG"), help="Tenant slug")
    parser.add_argument("--name", default=os.environ.get("TENANT_NAME"), help="Display name")
    parser.add_argument(
        "--owner-email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--platform-owner",
        action="store_true",
        help="Also grant the global owner role (platform-wide superuser)",
    )
    args = parser.parse_args()

    for flag, value in (("--slug", args.slug), ("--owner-email", args.owner_email)):
        if not value:
            print(f"Error: {flag} is required")
            sys.exit(1)
    name = args.name or args.slug

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("APP_ENV", "development")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_tenant(
            args.slug, name, args.owner_email, args.dry_run, platform_owner=args.platform_owner
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(
        f"\ntenant: {result['tenant_status']}, principal: {result['principal_status']}, "
        f"manager role: {result['role_status']}, "
        f"platform owner: {result['platform_owner_status']}"
    )


if __name__ == "__main__":
    main()
