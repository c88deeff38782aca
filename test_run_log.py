import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, select

from tenantcron.db import engine, make_engine
from tenantcron.models import cron_run_log_table
from tenantcron.services.run_log import (
    compute_lock_key,
    find_stale_runs,
    get_last_runs,
    log_cron_complete,
    log_cron_failed,
    log_cron_halted,
    log_cron_start,
    mark_runs_timeout,
    try_start_run,
)


def rows_for(cron_name):
    with engine.connect() as conn:
        return conn.execute(
            select(cron_run_log_table).where(cron_run_log_table.c.cron_name == cron_name)
        ).mappings().all()


def insert_running(cron_name, started_at):
    log_id = str(uuid.uuid4())
    with engine.begin() as conn:
        conn.execute(
            insert(cron_run_log_table).values(
                id=log_id, cron_name=cron_name, status="running", started_at=started_at
            )
        )
    return log_id


def test_start_then_complete_records_summary():
    handle = log_cron_start("nap-sync")
    assert handle.log_id is not None

    log_cron_complete(handle, {"processed": 3, "errors": 0})

    [row] = rows_for("nap-sync")
    assert row["status"] == "success"
    assert row["completed_at"] is not None
    assert row["duration_ms"] >= 0
    assert json.loads(row["summary_json"]) == {"processed": 3, "errors": 0}


def test_failed_and_halted_rows():
    handle = log_cron_start("review-sync")
    log_cron_failed(handle, "db unreachable")
    log_cron_halted("vaio")

    [failed] = rows_for("review-sync")
    assert failed["status"] == "failed"
    assert failed["error_message"] == "db unreachable"
    [halted] = rows_for("vaio")
    assert halted["status"] == "halted"
    assert halted["duration_ms"] == 0


def test_logging_never_raises_when_store_is_unavailable():
    broken = make_engine("sqlite+pysqlite:///:memory:")  # no tables

    handle = log_cron_start("nap-sync", engine=broken)
    assert handle.log_id is None
    log_cron_complete(handle, {"processed": 1}, engine=broken)
    log_cron_halted("nap-sync", engine=broken)

    live = log_cron_start("nap-sync")
    log_cron_failed(live, "boom", engine=broken)


def test_try_start_run_is_single_flight():
    first = try_start_run("schema-drift")
    assert first is not None and first.log_id is not None

    assert try_start_run("schema-drift") is None
    assert try_start_run("nap-sync") is not None

    log_cron_complete(first, {})
    assert try_start_run("schema-drift") is not None


def test_stale_running_row_does_not_block():
    insert_running("vaio", datetime.now(timezone.utc) - timedelta(hours=2))

    assert try_start_run("vaio", stale_after_seconds=900) is not None


def test_try_start_run_proceeds_without_log_store():
    broken = make_engine("sqlite+pysqlite:///:memory:")
    handle = try_start_run("nap-sync", engine=broken)
    assert handle is not None
    assert handle.log_id is None


def test_find_and_mark_stale_runs():
    old_id = insert_running("nap-sync", datetime.now(timezone.utc) - timedelta(hours=1))
    insert_running("nap-sync", datetime.now(timezone.utc))
    threshold = datetime.now(timezone.utc) - timedelta(minutes=30)

    with engine.connect() as conn:
        stale = find_stale_runs(threshold, conn=conn)
    assert [r["id"] for r in stale] == [old_id]
    assert stale[0]["started_at"].tzinfo is not None

    with engine.begin() as conn:
        assert mark_runs_timeout([old_id], "stuck", conn=conn) == 1
        assert mark_runs_timeout([old_id], "stuck", conn=conn) == 0
        assert mark_runs_timeout([], "stuck", conn=conn) == 0

    statuses = sorted(r["status"] for r in rows_for("nap-sync"))
    assert statuses == ["running", "timeout"]


def test_get_last_runs_newest_first():
    first = log_cron_start("citation-intelligence")
    log_cron_complete(first, {"processed": 1})
    second = log_cron_start("citation-intelligence")
    log_cron_failed(second, "boom")

    with engine.connect() as conn:
        runs = get_last_runs("citation-intelligence", 10, conn=conn)

    assert [r["status"] for r in runs] == ["failed", "success"]
    assert runs[1]["summary"] == {"processed": 1}
    assert runs[0]["summary"] is None


def test_lock_key_is_stable_signed_int64():
    key = compute_lock_key("nap-sync")
    assert key == compute_lock_key("nap-sync")
    assert key != compute_lock_key("review-sync")
    assert -(2**63) <= key < 2**63
