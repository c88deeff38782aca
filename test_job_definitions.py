import asyncio
import json
import os
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from tenantcron.services.jobs.batch_jobs import JOB_RUNNERS
from tenantcron.services.jobs.definitions import (
    JOB_DEFINITIONS,
    JobDefinition,
    JobNotFound,
    get_job_definition,
)
from tenantcron.services.jobs.processors import (
    ProcessorNotRegistered,
    get_processor,
    load_processor_modules,
    register_processor,
    unregister_processor,
)
from tenantcron.services.scheduling.cron import (
    InvalidCronExpression,
    compute_next_run,
    format_cron_human_readable,
    validate_cron,
)
from tenantcron.services.tenants import PlanTier
from tenantcron.utils.asyncio_runner import run_async_safe


def test_catalogue():
    assert set(JOB_DEFINITIONS) == {
        "authority-mapping",
        "nap-sync",
        "review-sync",
        "schema-drift",
        "vaio",
        "citation-intelligence",
        "token-refresh",
        "places-refresh",
    }
    assert get_job_definition("review-sync").kill_switch_env_key == "STOP_REVIEW_SYNC_CRON"
    assert get_job_definition("citation-intelligence").iteration_unit == "organization"
    assert get_job_definition("token-refresh").dispatch_event == "gbp/token.refresh"
    assert get_job_definition("places-refresh").dispatch_event == "places/details.refresh"


def test_every_batch_job_has_a_runner_and_no_event_job_does():
    batch_jobs = {name for name, job in JOB_DEFINITIONS.items() if not job.is_event_job}
    assert set(JOB_RUNNERS) == batch_jobs


def test_unknown_job():
    with pytest.raises(JobNotFound, match="Unknown job: nope"):
        get_job_definition("nope")


def test_definition_validation():
    with pytest.raises(InvalidCronExpression):
        JobDefinition(job_name="bad", schedule="every day", iteration_unit="location", description="")
    with pytest.raises(ValueError):
        JobDefinition(job_name="bad", schedule="0 1 * * *", iteration_unit="event", description="")
    job = JobDefinition(job_name="ok-job", schedule="0 1 * * *", iteration_unit="location", description="")
    assert job.kill_switch_env_key == "STOP_OK_JOB_CRON"
    assert job.min_plan is PlanTier.GROWTH


def test_validate_cron():
    validate_cron("*/15 * * * *")
    with pytest.raises(InvalidCronExpression):
        validate_cron("* * * *")
    with pytest.raises(InvalidCronExpression):
        validate_cron("61 * * * *")


def test_compute_next_run():
    now = datetime(2026, 10, 18, 10, 30, tzinfo=timezone.utc)
    assert compute_next_run("0 */6 * * *", "UTC", now) == datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    # Monday 05:00 after Sunday 2026-10-18
    assert compute_next_run("0 5 * * 1", "UTC", now) == datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)
    assert compute_next_run("0 3 * * *", "America/Chicago", now) == datetime(
        2026, 10, 19, 8, 0, tzinfo=timezone.utc
    )


@pytest.mark.parametrize(
    "expr,expected",
    [
        ("*/15 * * * *", "every 15 minutes"),
        ("0 */6 * * *", "every 6 hours"),
        ("0 3 * * *", "daily at 03:00"),
        ("0 5 * * 1", "every Monday at 05:00"),
        ("0 2 1 * *", "monthly on day 1 at 02:00"),
        ("5 4 * 1 *", "5 4 * 1 *"),
    ],
)
def test_format_cron_human_readable(expr, expected):
    assert format_cron_human_readable(expr) == expected


def test_beat_schedule_covers_every_job():
    from tenantcron.celery_app import build_beat_schedule, celery_app

    schedule = build_beat_schedule()

    assert set(schedule) == {f"cron-{name}" for name in JOB_DEFINITIONS}
    entry = schedule["cron-review-sync"]
    assert entry["task"] == "tenantcron.tasks.cron_jobs.run_cron_job_task"
    assert entry["args"] == ("review-sync",)
    assert entry["schedule"].hour == {0, 6, 12, 18}
    assert entry["schedule"].minute == {0}
    assert "tenantcron.tasks.durable.execute_durable_function" in celery_app.tasks
    assert "tenantcron.tasks.cron_jobs.run_cron_job_task" in celery_app.tasks


def test_beat_task_uses_the_same_orchestration(monkeypatch):
    from tenantcron.tasks import cron_jobs

    monkeypatch.setenv("STOP_SCHEMA_DRIFT_CRON", "true")

    assert cron_jobs.run_cron_job_task.run("schema-drift") == {
        "status_code": 200,
        "ok": True,
        "halted": True,
    }


def test_jobs_keep_their_established_kill_switch_names(monkeypatch):
    from tenantcron.services.jobs.orchestrator import snapshot_kill_switches
    from tenantcron.tasks import cron_jobs

    assert get_job_definition("citation-intelligence").kill_switch_env_key == "STOP_CITATION_CRON"
    assert get_job_definition("authority-mapping").kill_switch_env_key == "STOP_AUTHORITY_CRON"

    monkeypatch.setenv("STOP_CITATION_CRON", "true")
    monkeypatch.setenv("STOP_AUTHORITY_MAPPING_CRON", "true")
    snapshot = snapshot_kill_switches()

    assert snapshot.is_halted("citation-intelligence") is True
    assert snapshot.is_halted("authority-mapping") is False
    assert cron_jobs.run_cron_job_task.run("citation-intelligence") == {
        "status_code": 200,
        "ok": True,
        "halted": True,
    }


DOMAIN_MODULE = '''
from tenantcron.services.jobs.processors import register_processor


@register_processor("nap-sync")
def sync_listing(tenant, engine):
    return {"listings_checked": 1}
'''

WORKER_SCRIPT = '''
import json
from datetime import datetime, timezone

from sqlalchemy import insert

from tenantcron.db import engine
from tenantcron.models import locations_table, metadata, organizations_table

metadata.create_all(engine)
now = datetime.now(timezone.utc)
with engine.begin() as conn:
    conn.execute(insert(organizations_table).values(
        id="org-1", name="Org 1", plan="growth", plan_status="active", created_at=now))
    conn.execute(insert(locations_table).values(
        id="loc-1", org_id="org-1", business_name="Loc 1", created_at=now))

from tenantcron.tasks.cron_jobs import run_cron_job_task

print(json.dumps(run_cron_job_task.run("nap-sync")))
'''


def test_worker_registers_processors_before_beat_tasks_run(tmp_path):
    """A fresh worker process runs a Beat-fired batch job with PROCESSOR_MODULES only."""
    (tmp_path / "sample_domain.py").write_text(DOMAIN_MODULE)
    src_dir = Path(__file__).resolve().parent / "src"
    env = dict(os.environ)
    env.update(
        {
            "PYTHONPATH": os.pathsep.join([str(tmp_path), str(src_dir)]),
            "PROCESSOR_MODULES": "sample_domain",
            "DATABASE_URL": f"sqlite+pysqlite:///{tmp_path / 'worker.db'}",
        }
    )

    proc = subprocess.run(
        [sys.executable, "-c", WORKER_SCRIPT],
        env=env,
        cwd=tmp_path,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert proc.returncode == 0, proc.stderr
    payload = json.loads(proc.stdout.strip().splitlines()[-1])
    assert payload["status_code"] == 200
    assert payload["ok"] is True
    assert payload["processed"] == 1
    assert payload["errors"] == 0
    assert payload["listings_checked"] == 1


def test_processor_registry():
    @register_processor("authority-mapping", applies_to=lambda tenant: True)
    def map_authority(tenant, engine):
        return None

    try:
        spec = get_processor("authority-mapping")
        assert spec.process is map_authority
        assert spec.applies_to is not None
    finally:
        unregister_processor("authority-mapping")

    with pytest.raises(ProcessorNotRegistered):
        get_processor("authority-mapping")


def test_load_processor_modules():
    assert load_processor_modules([]) == []
    assert load_processor_modules(["json"]) == ["json"]
    with pytest.raises(RuntimeError, match="no_such_module"):
        load_processor_modules(["no_such_module_anywhere"])


def test_run_async_safe_outside_and_inside_a_loop():
    async def answer():
        return 42

    assert run_async_safe(answer()) == 42

    async def nested():
        return run_async_safe(answer())

    assert asyncio.run(nested()) == 42
    assert run_async_safe(answer(), force_thread=True) == 42
