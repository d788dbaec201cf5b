#!/usr/bin/env python3
"""Create the first administrator of an empty panel.

Usage:
    # Using environment variables:
    ADMIN_IDENTITY=root ADMIN_EMAIL=admin@example.com ADMIN_SECRET='Tr0ub4dor&3xtra!' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --identity root --email admin@example.com \
        --secret 'Tr0ub4dor&3xtra!' --role super_admin

Environment Variables:
    ADMIN_IDENTITY: Identity name of the first principal
    ADMIN_EMAIL: Email of the first principal
    ADMIN_SECRET: Secret (must satisfy the strength policy)
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


def bootstrap_admin(
    identity: str, email: str, secret: str, role: str, dry_run: bool = False
) -> dict:
    """Register the first principal through the normal registration path.

    Returns:
        dict with principal_id, identity, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from adminguard.service.passwords import secret_policy_violations
    from adminguard.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.count_principals()
    if existing:
        print(f"{existing} principal(s) already exist; registration is closed")
        return {"principal_id": None, "identity": identity, "status": "exists"}

    if dry_run:
        violations = secret_policy_violations(secret)
        for violation in violations:
            print(f"[DRY RUN] {violation}")
        print(f"[DRY RUN] Would create {role} principal: {identity} <{email}>")
        return {"principal_id": None, "identity": identity, "status": "dry_run"}

    issued = runtime.auth.register(identity, email, secret, role)
    print(f"Created {issued.principal.role} principal: {identity} (id: {issued.principal.id})")
    return {
        "principal_id": issued.principal.id,
        "identity": identity,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first adminguard principal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identity",
        default=os.environ.get("ADMIN_IDENTITY"),
        help="Identity name (or set ADMIN_IDENTITY env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--secret",
        default=os.environ.get("ADMIN_SECRET"),
        help="Secret (or set ADMIN_SECRET env var)",
    )
    parser.add_argument(
        "--role",
        default="super_admin",
        choices=["super_admin", "admin", "editor", "viewer"],
        help="Role of the first principal (default: super_admin)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (("identity", args.identity), ("email", args.email), ("secret", args.secret)):
        if not value:
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/adminguard-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from adminguard.service.errors import ServiceError

    try:
        result = bootstrap_admin(
            args.identity, args.email, args.secret, args.role, args.dry_run
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for item in exc.detail.get("errors", []):
            print(f"  - {item}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPrincipal created successfully!")
        print(f"  Identity: {result['identity']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "exists":
        sys.exit(2)


if __name__ == "__main__":
    main()
