"""One cron invocation, from kill-switch check to reported payload.

Shared by the HTTP trigger (routers/cron.py), the Celery Beat task and the
run_cron_job script, so all three halt, single-flight and report the same way.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from tenantcron.services.durable.registry import EventDispatchError, run_event_inline, send_event
from tenantcron.services.jobs.batch_jobs import get_job_runner
from tenantcron.services.jobs.definitions import JOB_DEFINITIONS, JobDefinition, get_job_definition
from tenantcron.services.kill_switch import KillSwitchSnapshot
from tenantcron.services.reporting import ResultReporter
from tenantcron.services.run_log import (
    log_cron_complete,
    log_cron_failed,
    log_cron_halted,
    log_cron_start,
    try_start_run,
)

logger = logging.getLogger(__name__)

CronResponse = Tuple[int, Dict[str, Any]]


def snapshot_kill_switches() -> KillSwitchSnapshot:
    return KillSwitchSnapshot.from_env(
        {name: job.kill_switch_env_key for name, job in JOB_DEFINITIONS.items()}
    )


async def run_cron_job(
    job_name: str,
    *,
    kill_switches: Optional[KillSwitchSnapshot] = None,
    engine=None,
    reporter: Optional[ResultReporter] = None,
    **runner_options: Any,
) -> CronResponse:
    """Run or dispatch `job_name` once and return (http_status, payload).

    Raises JobNotFound for an unknown job. Every other failure is turned
    into a 500 payload by the reporter.
    """
    job = get_job_definition(job_name)
    reporter = reporter or ResultReporter()
    if kill_switches is None:
        kill_switches = snapshot_kill_switches()

    if kill_switches.is_halted(job.job_name):
        log_cron_halted(job.job_name, engine=engine)
        return reporter.report_halted(job.job_name)

    if job.is_event_job:
        return await _dispatch_event_job(job, engine=engine, reporter=reporter)
    return await _run_batch_job(job, engine=engine, reporter=reporter, **runner_options)


async def _run_batch_job(
    job: JobDefinition,
    *,
    engine,
    reporter: ResultReporter,
    **runner_options: Any,
) -> CronResponse:
    handle = try_start_run(job.job_name, engine=engine)
    if handle is None:
        return reporter.report_skipped(job.job_name, "already_running")

    try:
        runner = get_job_runner(job.job_name)
        if runner is None:
            raise RuntimeError(f"No batch runner for job '{job.job_name}'")
        result = await runner(engine, **runner_options)
    except Exception as exc:
        log_cron_failed(handle, str(exc) or type(exc).__name__, engine=engine)
        return reporter.report(job.job_name, None, exc)

    log_cron_complete(handle, result.to_summary(), engine=engine)
    return reporter.report(job.job_name, result)


async def _dispatch_event_job(job: JobDefinition, *, engine, reporter: ResultReporter) -> CronResponse:
    handle = log_cron_start(job.job_name, engine=engine)
    data = {"job": job.job_name, "triggered_at": datetime.now(timezone.utc).isoformat()}

    try:
        try:
            run_ids = send_event(job.dispatch_event, data, engine=engine)
            payload: Dict[str, Any] = {"dispatched": True, "runs": len(run_ids)}
        except EventDispatchError as exc:
            logger.warning(f"cron[{job.job_name}]: queue unavailable, running inline: {exc}")
            results = await run_event_inline(job.dispatch_event, data, engine=engine)
            payload = {"dispatched": False, "inline": True, "results": results}
    except Exception as exc:
        log_cron_failed(handle, str(exc) or type(exc).__name__, engine=engine)
        return reporter.report(job.job_name, None, exc)

    log_cron_complete(handle, payload, engine=engine)
    return reporter.report_dispatched(job.job_name, payload)
