#!/usr/bin/env python3
"""Delete checkpoints whose retention period has passed.

Checkpoints created with an expiry (``expires_in_days``) are never removed
by the engine itself; run this periodically (cron, systemd timer) instead.
Deleting a checkpoint also deletes its node-execution history.

Usage:
    python scripts/purge_expired_checkpoints.py --dry-run
    python scripts/purge_expired_checkpoints.py --limit 500

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the JSON-file store if not set)
    STATE_FS_ROOT: directory of the JSON-file store
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge_expired(dry_run: bool = False, limit: int | None = None) -> dict:
    """Delete expired checkpoints.

    Returns:
        dict with the number of expired checkpoints found and deleted
    """
    # Import here so env defaults set in main() apply to settings
    from forgegraph.service.runtime import get_runtime

    runtime = get_runtime()
    expired = await runtime.checkpoints.list_expired()
    if limit is not None:
        expired = expired[:limit]

    deleted = 0
    for record in expired:
        if dry_run:
            print(
                f"[DRY RUN] Would delete checkpoint {record.id} "
                f"({record.name}, expired {record.expires_at.isoformat()})"
            )
            continue
        if await runtime.checkpoints.delete(record.id):
            deleted += 1
    return {"expired": len(expired), "deleted": deleted}


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired workflow checkpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List expired checkpoints without deleting them",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Delete at most this many checkpoints",
    )
    args = parser.parse_args()

    if args.limit is not None and args.limit < 1:
        print("Error: --limit must be at least 1")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using the JSON-file store (set DATABASE_URL for Postgres)")
    else:
        os.environ.setdefault("USE_MEMORY_STORE", "false")

    try:
        result = asyncio.run(purge_expired(args.dry_run, args.limit))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\nExpired checkpoints: {result['expired']}, deleted: {result['deleted']}")


if __name__ == "__main__":
    main()
