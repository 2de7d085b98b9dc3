#!/usr/bin/env python3
"""Issue a service API key for a caller system.

Usage:
    python scripts/create_service_key.py --name canvas-prod \
        --scope blocks:execute --scope blocks:list --scope users:provision

    # All scopes, custom quotas:
    python scripts/create_service_key.py --name canvas-staging --all-scopes \
        --per-minute 200 --per-day 20000

The raw key is printed once and never stored; only its SHA-256 hash is kept.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless --memory)
    SERVICE_KEY_PREFIX: Prefix for generated keys (default sim_svc_)
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_service_key(
    name: str,
    scopes: list[str],
    *,
    per_minute: int | None = None,
    per_day: int | None = None,
    expires_in_days: int | None = None,
) -> dict:
    """Persist a new key and return its raw value with the stored record's ids."""
    # Import here to avoid loading config before env vars are set
    from blockgate.service.runtime import get_runtime
    from blockgate.storage.models import utcnow

    runtime = get_runtime()
    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
    raw_key, credential = runtime.authenticator.issue_key(
        name,
        scopes,
        rate_limit_per_minute=per_minute,
        rate_limit_per_day=per_day,
        expires_at=expires_at,
    )
    return {
        "raw_key": raw_key,
        "key_id": credential.id,
        "key_prefix": credential.key_prefix,
        "service_name": credential.service_name,
        "scopes": credential.scopes,
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
    }


def main():
    from blockgate.service.auth import ALL_SCOPES

    parser = argparse.ArgumentParser(
        description="Issue a service API key for the block execution gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Human-readable key name")
    parser.add_argument(
        "--scope",
        action="append",
        default=[],
        choices=ALL_SCOPES,
        help="Scope to grant; repeat for several",
    )
    parser.add_argument("--all-scopes", action="store_true", help="Grant every scope")
    parser.add_argument("--per-minute", type=int, default=None, help="Per-minute quota")
    parser.add_argument("--per-day", type=int, default=None, help="Per-day quota")
    parser.add_argument(
        "--expires-in-days", type=int, default=None, help="Expire the key after N days"
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-memory store (the key is lost on exit; for trying the script out)",
    )

    args = parser.parse_args()

    scopes = list(ALL_SCOPES) if args.all_scopes else args.scope
    if not scopes:
        print("Error: pass at least one --scope or --all-scopes")
        sys.exit(1)

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
    elif not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required (or pass --memory)")
        sys.exit(1)

    # Key issuance never touches rate limits, so Redis is optional here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_service_key(
            args.name,
            scopes,
            per_minute=args.per_minute,
            per_day=args.per_day,
            expires_in_days=args.expires_in_days,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\nService key created. Store it now; it cannot be shown again.")
    print(f"  Key:      {result['raw_key']}")
    print(f"  Key ID:   {result['key_id']}")
    print(f"  Prefix:   {result['key_prefix']}")
    print(f"  Service:  {result['service_name']}")
    print(f"  Scopes:   {', '.join(result['scopes'])}")
    if result["expires_at"]:
        print(f"  Expires:  {result['expires_at']}")


if __name__ == "__main__":
    main()
