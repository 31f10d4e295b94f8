#!/usr/bin/env python3
"""Seed a user credential and its profile record.

Usage:
    python scripts/bootstrap_user.py --user user --password user \\
        --partition USA --row "Franklin,Aretha"

    # Seed a friend's profile only (no credential):
    python scripts/bootstrap_user.py --partition Canada --row "Quin,Tegan" --profile-only

Environment Variables:
    SHARED_FS_ROOT: where the memory store persists state/profile_store.json
    TOKEN_SECRET: token signing secret (generated and persisted when unset)
    PROFILE_TABLE: profile table name (default DataTable)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    user_id: str | None,
    password: str | None,
    partition: str,
    row: str,
    *,
    profile_only: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the profile record and, unless ``profile_only``, the credential.

    Returns:
        dict with user_id, locator and status per part ('created' or 'exists')
    """
    # Import here to avoid loading config before env vars are set
    from socialgate.service.runtime import get_runtime

    runtime = get_runtime()
    table = runtime.settings.profile_table
    result = {"user_id": user_id, "partition": partition, "row": row}

    if runtime.store.get_entity(table, partition, row) is not None:
        result["profile"] = "exists"
    elif dry_run:
        result["profile"] = "dry_run"
    else:
        runtime.store.put_entity(table, partition, row, {"Friends": "", "Status": ""})
        result["profile"] = "created"

    if profile_only:
        return result

    if runtime.store.get_credential(user_id) is not None:
        result["credential"] = "exists"
    elif dry_run:
        result["credential"] = "dry_run"
    else:
        runtime.gate.register_credential(user_id, password, partition, row)
        result["credential"] = "created"
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed a SocialGate user and profile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user", default=os.environ.get("SEED_USER"), help="User id")
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument("--partition", required=True, help="Profile partition (country)")
    parser.add_argument("--row", required=True, help="Profile row (full name)")
    parser.add_argument(
        "--profile-only",
        action="store_true",
        help="Only create the profile record, e.g. for a friend",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.profile_only and (not args.user or not args.password):
        print("Error: --user and --password are required unless --profile-only is set")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/socialgate-bootstrap"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(
            args.user,
            args.password,
            args.partition,
            args.row,
            profile_only=args.profile_only,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Profile {result['partition']}/{result['row']}: {result['profile']}")
    if "credential" in result:
        print(f"Credential {result['user_id']}: {result['credential']}")


if __name__ == "__main__":
    main()
