#!/usr/bin/env python3
"""Expire two-factor challenges that outlived their code.

Usage:
    DATABASE_URL=postgresql://... python scripts/cleanup_challenges.py

    # Keep running, sweeping every 5 minutes:
    python scripts/cleanup_challenges.py --interval 300

The API process runs the same sweep in the background; this script is for
deployments that disable it (CHALLENGE_CLEANUP_INTERVAL_SECONDS=0) and run
the sweep from cron instead.
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def sweep() -> int:
    # Import here to avoid loading config before env vars are set
    from accountguard.service.runtime import get_runtime

    return get_runtime().two_factor.cleanup_expired()


def main():
    parser = argparse.ArgumentParser(
        description="Expire stale two-factor challenges",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="Seconds between sweeps; 0 runs once and exits",
    )
    args = parser.parse_args()

    # The sweep only touches the relational store
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        while True:
            expired = sweep()
            print(f"Expired {expired} challenge(s)")
            if args.interval <= 0:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
