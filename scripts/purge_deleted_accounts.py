#!/usr/bin/env python3
"""Permanently delete accounts whose 30-day recovery window has passed.

The API process runs the same purge every CLEANUP_INTERVAL_HOURS; this
script is for cron-driven deployments that disable the in-process loop or
for running it by hand.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_deleted_accounts.py
    python scripts/purge_deleted_accounts.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET_KEY: required by the runtime even though no tokens are issued
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(dry_run: bool = False) -> dict:
    """Purge expired soft-deleted accounts.

    Returns:
        dict with the number of accounts found and purged
    """
    # Import here so argparse --help works without a configured environment
    from showauth.service.lifecycle import RECOVERY_WINDOW
    from showauth.service.runtime import get_runtime
    from showauth.storage.models import utcnow

    runtime = get_runtime()
    try:
        now = utcnow()
        expired = runtime.store.list_expired_deleted_accounts(now - RECOVERY_WINDOW)
        if dry_run:
            for account in expired:
                print(f"[DRY RUN] Would purge account {account.id} (deleted {account.deleted_at.isoformat()})")
            return {"found": len(expired), "purged": 0}
        purged = runtime.lifecycle.purge_expired_accounts(now)
        return {"found": len(expired), "purged": purged}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge accounts past their recovery window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the accounts that would be purged without deleting them",
    )
    args = parser.parse_args()

    try:
        result = purge(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Expired accounts found: {result['found']}")
    if not args.dry_run:
        print(f"Accounts purged: {result['purged']}")


if __name__ == "__main__":
    main()
