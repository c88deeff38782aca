from __future__ import annotations

import logging

from tenantcron import settings
from tenantcron.celery_app import celery_app
from tenantcron.services.durable.executor import (
    DurableRunNotFound,
    StepAttemptsExhausted,
    StepFailed,
    execute_function,
)
from tenantcron.services.durable.registry import get_function
from tenantcron.services.reporting import get_error_tracker
from tenantcron.utils.asyncio_runner import run_async_safe

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="tenantcron.tasks.durable.execute_durable_function",
    autoretry_for=(StepFailed,),
    retry_backoff=True,
    retry_backoff_max=settings.DURABLE_RETRY_BACKOFF_MAX_SECONDS,
    retry_jitter=True,
    # Each step has at most DURABLE_MAX_ATTEMPTS attempts, so redelivery is finite.
    max_retries=None,
    soft_time_limit=30 * 60,
    time_limit=32 * 60,
)
def execute_durable_function(self, function_id: str, run_id: str) -> dict:
    """Worker task: execute (or replay) one delivery of a durable function run.

    StepFailed is re-raised so Celery schedules the redelivery with backoff;
    completed steps are replayed from the ledger on the next delivery.
    """
    fn = get_function(function_id)
    try:
        return run_async_safe(
            execute_function(fn, run_id),
            context_info={"function_id": function_id, "run_id": run_id, "retry": self.request.retries},
        )
    except DurableRunNotFound:
        logger.warning(f"execute_durable_function: run_id={run_id} not found")
        return {"status": "not_found", "run_id": run_id}
    except StepAttemptsExhausted as exc:
        get_error_tracker().capture_exception(
            exc, {"job": function_id, "version": settings.APP_VERSION}
        )
        return {"ok": False, "run_id": run_id, "error": str(exc)}
