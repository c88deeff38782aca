#!/usr/bin/env python3
"""Run one cron job in-process, without the HTTP hop or the Celery queue.

Goes through the same kill-switch check, single-flight guard, run log and
reporter as GET /cron/<job>. Exit status is 0 for a 2xx result, 1 otherwise.

Usage:
    python scripts/run_cron_job.py nap-sync [--json] [--time-budget 300]
    python scripts/run_cron_job.py --list
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from tenantcron import settings
from tenantcron.services.jobs.definitions import JOB_DEFINITIONS, JobNotFound
from tenantcron.services.jobs.orchestrator import run_cron_job, snapshot_kill_switches
from tenantcron.services.jobs.processors import load_processor_modules
from tenantcron.services.scheduling.cron import compute_next_run, format_cron_human_readable
from tenantcron.utils.asyncio_runner import run_async_safe


def print_jobs() -> None:
    kill_switches = snapshot_kill_switches()
    now = datetime.now(timezone.utc)
    for job in JOB_DEFINITIONS.values():
        flag = " [HALTED]" if kill_switches.is_halted(job.job_name) else ""
        next_run = compute_next_run(job.schedule, job.timezone, now).strftime("%Y-%m-%d %H:%M UTC")
        print(
            f"{job.job_name:<24} {job.schedule:<14} next={next_run}  "
            f"{format_cron_human_readable(job.schedule)}{flag}"
        )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one cron job in-process")
    parser.add_argument("job_name", nargs="?", help="Job name, e.g. nap-sync")
    parser.add_argument("--list", action="store_true", help="List known jobs and exit")
    parser.add_argument("--json", action="store_true", help="Print the response payload as JSON only")
    parser.add_argument(
        "--time-budget",
        type=float,
        default=None,
        help=f"Batch time budget in seconds (default: {settings.BATCH_TIME_BUDGET_SECONDS})",
    )
    args = parser.parse_args()

    if args.list:
        print_jobs()
        return 0
    if not args.job_name:
        parser.error("job_name is required unless --list is given")

    logging.basicConfig(
        level=logging.WARNING if args.json else settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_processor_modules()

    runner_options = {}
    if args.time_budget is not None:
        runner_options["time_budget_seconds"] = args.time_budget

    try:
        status, payload = run_async_safe(
            run_cron_job(args.job_name, **runner_options),
            context_info={"job": args.job_name, "source": "cli"},
        )
    except JobNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, default=str))
    else:
        print(f"{args.job_name}: HTTP {status}")
        print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    return 0 if 200 <= status < 300 else 1


if __name__ == "__main__":
    sys.exit(main())
