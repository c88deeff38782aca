"""Common Celery app for Beat and Worker."""

import importlib
import logging
import pkgutil
from typing import Any, Dict, List

from celery import Celery
from celery.schedules import crontab

from tenantcron import settings
from tenantcron.services.jobs.definitions import JOB_DEFINITIONS
from tenantcron.services.jobs.processors import load_processor_modules

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

celery_app = Celery(
    "tenantcron",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)


def build_beat_schedule() -> Dict[str, Dict[str, Any]]:
    """One Beat entry per job definition, driven by its cron expression.

    Beat calls the same orchestration as GET /cron/<job>, kill switches included.
    """
    schedule: Dict[str, Dict[str, Any]] = {}
    for job in JOB_DEFINITIONS.values():
        minute, hour, day_of_month, month_of_year, day_of_week = job.schedule.split()
        schedule[f"cron-{job.job_name}"] = {
            "task": "tenantcron.tasks.cron_jobs.run_cron_job_task",
            "schedule": crontab(
                minute=minute,
                hour=hour,
                day_of_month=day_of_month,
                month_of_year=month_of_year,
                day_of_week=day_of_week,
            ),
            "args": (job.job_name,),
            # Worker listens on default 'celery' queue.
            "options": {"queue": "celery"},
        }
    return schedule


celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.conf.timezone = "UTC"
celery_app.conf.task_acks_late = True
celery_app.conf.beat_schedule_filename = "celerybeat-schedule-tenantcron"


def _import_all_task_modules() -> List[str]:
    """Import all modules under `tenantcron.tasks.*` so Celery registers task decorators."""
    imported: List[str] = []
    try:
        import tenantcron.tasks as tasks_pkg
    except Exception as e:
        raise RuntimeError(
            "Celery startup failed: cannot import task package 'tenantcron.tasks'"
        ) from e

    try:
        for module_info in pkgutil.walk_packages(
            tasks_pkg.__path__,
            prefix=f"{tasks_pkg.__name__}.",
        ):
            name = module_info.name
            importlib.import_module(name)
            imported.append(name)
    except Exception as e:
        raise RuntimeError(
            "Celery startup failed: error while importing task modules under 'tenantcron.tasks.*'"
        ) from e
    return imported


# Auto-import tasks for both worker and beat processes.
_import_all_task_modules()
# Batch jobs fired by Beat need the domain processors registered in the worker too.
load_processor_modules()
