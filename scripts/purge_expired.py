#!/usr/bin/env python3
"""Purge expired refresh tokens and stale throttling state once.

Usage:
    DATABASE_URL=postgresql://... REDIS_URL=redis://... JWT_SECRET=... \
        python scripts/purge_expired.py

    # Only touch the refresh-token table:
    python scripts/purge_expired.py --refresh-tokens-only

Environment Variables:
    DATABASE_URL: PostgreSQL connection string holding the refresh_token table
    REDIS_URL: Redis URL (counters and blacklist entries expire natively there)
    JWT_SECRET: Signing key; required because the runtime validates it at startup
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(refresh_tokens_only: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from fitstack.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if refresh_tokens_only:
            return {"refresh_tokens": runtime.refresh_tokens.purge_expired()}
        return runtime.sweep()
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired refresh tokens and stale rate-limit state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--refresh-tokens-only",
        action="store_true",
        help="Only delete expired refresh tokens",
    )
    args = parser.parse_args()

    try:
        result = purge(args.refresh_tokens_only)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for name, count in result.items():
        print(f"  {name}: {count} removed")


if __name__ == "__main__":
    main()
