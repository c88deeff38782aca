"""Scheduler-facing trigger endpoints.

Every route requires `Authorization: Bearer <CRON_SECRET>`; an unauthorized
request is rejected before any kill-switch read or tenant enumeration.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from tenantcron.db import engine
from tenantcron.deps import require_cron_secret
from tenantcron.schemas.cron import (
    CronJobInfo,
    CronJobListResponse,
    CronRunLogEntry,
    CronRunLogResponse,
)
from tenantcron.services.jobs.definitions import JOB_DEFINITIONS, JobNotFound, get_job_definition
from tenantcron.services.jobs.orchestrator import run_cron_job, snapshot_kill_switches
from tenantcron.services.run_log import get_last_runs
from tenantcron.services.scheduling.cron import compute_next_run, format_cron_human_readable
from tenantcron.utils.asyncio_runner import run_async_safe

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.get("", response_model=CronJobListResponse)
def list_cron_jobs():
    """List every scheduled job with its kill-switch state and next run time."""
    kill_switches = snapshot_kill_switches()
    now = datetime.now(timezone.utc)
    jobs = []
    for job in JOB_DEFINITIONS.values():
        jobs.append(
            CronJobInfo(
                job_name=job.job_name,
                schedule=job.schedule,
                schedule_human=format_cron_human_readable(job.schedule),
                iteration_unit=job.iteration_unit,
                description=job.description,
                min_plan=None if job.is_event_job else job.min_plan.value,
                dispatch_event=job.dispatch_event,
                kill_switch_env_key=job.kill_switch_env_key,
                halted=kill_switches.is_halted(job.job_name),
                next_run_at=compute_next_run(job.schedule, job.timezone, now),
            )
        )
    return CronJobListResponse(jobs=jobs, halted_jobs=kill_switches.halted_jobs())


@router.get("/{job_name}")
def trigger_cron_job(job_name: str):
    """Run (batch jobs) or dispatch (event jobs) one invocation of `job_name`.

    A plain `def` route: FastAPI runs it in its threadpool, and the job (with
    its blocking database calls) gets a private loop there, off the server loop.
    """
    kill_switches = snapshot_kill_switches()
    try:
        status_code, payload = run_async_safe(
            run_cron_job(job_name, kill_switches=kill_switches),
            context_info={"job": job_name},
        )
    except JobNotFound as e:
        logger.warning(f"trigger_cron_job: {e}")
        return JSONResponse(status_code=404, content={"error": str(e)})
    return JSONResponse(status_code=status_code, content=payload)


@router.get("/{job_name}/runs", response_model=CronRunLogResponse)
def list_cron_runs(job_name: str, limit: int = Query(10, ge=1, le=100)):
    """Most recent cron_run_log rows for a job, newest first."""
    try:
        job = get_job_definition(job_name)
    except JobNotFound as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    with engine.connect() as conn:
        rows = get_last_runs(job.job_name, limit, conn=conn)
    return CronRunLogResponse(
        job_name=job.job_name,
        runs=[CronRunLogEntry(**row) for row in rows],
    )
