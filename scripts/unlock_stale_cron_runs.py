#!/usr/bin/env python3
"""Mark cron_run_log rows stuck in 'running' as 'timeout'.

A run is stuck when its process died before writing a terminal status
(worker killed, deploy mid-run). Such rows already stop blocking new
invocations after CRON_RUN_STALE_SECONDS; this script closes them so the
health log is accurate.

Usage:
    python scripts/unlock_stale_cron_runs.py [--threshold-minutes 30] [--dry-run]
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone

from tenantcron.db import engine
from tenantcron.services.run_log import find_stale_runs, mark_runs_timeout


def unlock_stale_cron_runs(threshold_minutes: int = 30, dry_run: bool = False) -> int:
    """Return the number of runs marked (or, with dry_run, that would be marked) as timeout."""
    now = datetime.now(timezone.utc)
    threshold = now - timedelta(minutes=threshold_minutes)

    with engine.connect() as conn:
        stale_runs = find_stale_runs(threshold, conn=conn)

    if not stale_runs:
        print(f"No stale cron runs found (threshold: {threshold_minutes} minutes)")
        return 0

    print(f"Found {len(stale_runs)} stale cron run(s):")
    for run in stale_runs:
        age_minutes = (now - run["started_at"]).total_seconds() / 60
        print(f"  {run['id']}: cron={run['cron_name']}, age={age_minutes:.1f} minutes")

    if dry_run:
        print("\n[DRY RUN] Would mark these runs as timeout. Run without --dry-run to apply.")
        return len(stale_runs)

    with engine.begin() as conn:
        updated = mark_runs_timeout(
            [run["id"] for run in stale_runs],
            f"Stale run closed by unlock_stale_cron_runs.py (running > {threshold_minutes} minutes)",
            conn=conn,
        )

    skipped = len(stale_runs) - updated
    if skipped:
        print(f"{skipped} run(s) finished while this script was running and were left as is")
    print(f"\nMarked {updated} stale cron run(s) as timeout")
    return updated


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Mark stale running cron_run_log rows as timeout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry run (show what would be closed)
  python scripts/unlock_stale_cron_runs.py --dry-run

  # Close runs started more than 10 minutes ago
  python scripts/unlock_stale_cron_runs.py --threshold-minutes 10
        """,
    )
    parser.add_argument(
        "--threshold-minutes",
        type=int,
        default=30,
        help="Consider runs stale if started more than this many minutes ago (default: 30)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be updated without making changes",
    )
    args = parser.parse_args()

    try:
        unlock_stale_cron_runs(args.threshold_minutes, args.dry_run)
    except Exception as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
