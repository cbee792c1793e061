#!/usr/bin/env python3
"""Run one presence reconciliation pass outside the web process.

Usage:
    REDIS_URL=redis://localhost:6379/0 python scripts/reconcile_presence.py

    # Respect the fleet-wide lease so a running app instance is not duplicated:
    python scripts/reconcile_presence.py --use-lease

Environment Variables:
    REDIS_URL: Shared store connection string
    PRESENCE_TTL_SECONDS: Inactivity window after which entries are purged
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reconcile(use_lease: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from roomgate.service.runtime import Runtime

    runtime = Runtime()
    try:
        if use_lease:
            report = await runtime.reconciler.run_once()
            if report is None:
                return {"status": "skipped"}
        else:
            report = await runtime.presence.reconcile()
        return {
            "status": "completed",
            "scanned": report.scanned,
            "removed": report.removed,
            "rooms": report.rooms,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge stale room presence and resync cached room counts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--use-lease",
        action="store_true",
        help="Skip the pass if another instance holds the reconciliation lease",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(reconcile(args.use_lease))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "skipped":
        print("Another instance holds the reconciliation lease; nothing to do.")
        return
    print(
        f"Reconciled {result['rooms']} rooms: "
        f"scanned {result['scanned']} entries, removed {result['removed']}."
    )


if __name__ == "__main__":
    main()
