from __future__ import annotations

import logging

from tenantcron.celery_app import celery_app
from tenantcron.services.jobs.orchestrator import run_cron_job
from tenantcron.utils.asyncio_runner import run_async_safe

logger = logging.getLogger(__name__)


@celery_app.task(name="tenantcron.tasks.cron_jobs.run_cron_job_task")
def run_cron_job_task(job_name: str) -> dict:
    """Beat entry point: same halt/single-flight/report path as the HTTP trigger."""
    status, payload = run_async_safe(
        run_cron_job(job_name),
        context_info={"job": job_name},
    )
    logger.info(f"run_cron_job_task: {job_name} -> {status} {payload}")
    return {"status_code": status, **payload}
