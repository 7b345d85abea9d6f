#!/usr/bin/env python3
"""Delete expired verification, password-reset and refresh token records.

Usage:
    python scripts/cleanup_tokens.py
    python scripts/cleanup_tokens.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Use the in-process store (only useful for smoke tests)
    JWT_SECRET: Required by the runtime configuration outside TEST_MODE
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_cleanup(dry_run: bool = False) -> dict:
    """Run one sweep and return the records removed (or, for a dry run, due) per category."""
    # Import here to avoid loading config before env vars are set
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if dry_run:
            now = datetime.now(timezone.utc)
            print(f"[DRY RUN] Records expired as of {now.isoformat()} that would be deleted:")
            return await runtime.lifecycle.count_expired_tokens(now)
        return await runtime.cleanup_worker.run_once()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Delete expired token records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    # The sweep only touches the database; Redis is not needed here.
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        removed = asyncio.run(run_cleanup(dry_run=args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    for category, count in removed.items():
        print(f"{category}: {count}")


if __name__ == "__main__":
    main()
