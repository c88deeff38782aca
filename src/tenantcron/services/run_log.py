"""cron_run_log: one row per cron invocation.

Logging functions never raise. A failing log write must not fail the job, so
DB errors are logged and the handle carries log_id=None.
"""

from __future__ import annotations

import hashlib
import json
import logging
import struct
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, insert, select, text, update

from tenantcron import settings
from tenantcron.db import engine as default_engine
from tenantcron.models import cron_run_log_table

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CronLogHandle:
    log_id: Optional[str]
    started_at: float  # time.monotonic() at start
    cron_name: str = ""


def _insert_running(conn, cron_name: str) -> str:
    log_id = str(uuid.uuid4())
    conn.execute(
        insert(cron_run_log_table).values(
            id=log_id,
            cron_name=cron_name,
            status="running",
            started_at=_now_utc(),
        )
    )
    return log_id


def log_cron_start(cron_name: str, *, engine=None) -> CronLogHandle:
    started = time.monotonic()
    try:
        with (engine or default_engine).begin() as conn:
            log_id = _insert_running(conn, cron_name)
    except Exception as e:
        logger.warning(f"log_cron_start: insert failed for {cron_name}: {type(e).__name__}: {e}")
        log_id = None
    return CronLogHandle(log_id=log_id, started_at=started, cron_name=cron_name)


def compute_lock_key(cron_name: str) -> int:
    """Compute stable int64 for advisory lock."""
    digest = hashlib.sha1(f"cron:{cron_name}".encode("utf-8")).digest()[:8]
    return struct.unpack(">q", digest)[0]


def try_advisory_xact_lock(lock_key: int, *, conn) -> bool:
    row = conn.execute(
        text("SELECT pg_try_advisory_xact_lock(:lock_key) AS ok"),
        {"lock_key": lock_key},
    ).mappings().first()
    return bool(row["ok"]) if row else False


def get_active_run(
    cron_name: str,
    *,
    stale_after_seconds: int = settings.CRON_RUN_STALE_SECONDS,
    conn,
) -> Optional[Dict[str, Any]]:
    """Most recent non-stale 'running' row for this cron, if any."""
    stale_before = _now_utc() - timedelta(seconds=stale_after_seconds)
    t = cron_run_log_table
    row = conn.execute(
        select(t.c.id, t.c.started_at)
        .where(
            and_(
                t.c.cron_name == cron_name,
                t.c.status == "running",
                t.c.started_at >= stale_before,
            )
        )
        .order_by(t.c.started_at.desc())
        .limit(1)
    ).mappings().first()
    return dict(row) if row else None


def try_start_run(
    cron_name: str,
    *,
    stale_after_seconds: int = settings.CRON_RUN_STALE_SECONDS,
    engine=None,
) -> Optional[CronLogHandle]:
    """Single-flight start: returns None if another invocation is still running.

    On PostgreSQL the check-then-insert is serialised by a transaction-scoped
    advisory lock. If the log store itself is unavailable the run proceeds
    with log_id=None.
    """
    started = time.monotonic()
    try:
        with (engine or default_engine).begin() as conn:
            if conn.dialect.name == "postgresql":
                if not try_advisory_xact_lock(compute_lock_key(cron_name), conn=conn):
                    return None
            if get_active_run(cron_name, stale_after_seconds=stale_after_seconds, conn=conn):
                return None
            log_id = _insert_running(conn, cron_name)
    except Exception as e:
        logger.warning(f"try_start_run: log store unavailable for {cron_name}: {type(e).__name__}: {e}")
        log_id = None
    return CronLogHandle(log_id=log_id, started_at=started, cron_name=cron_name)


def _finish(handle: CronLogHandle, values: Dict[str, Any], *, engine=None) -> None:
    if handle.log_id is None:
        return
    try:
        with (engine or default_engine).begin() as conn:
            conn.execute(
                update(cron_run_log_table)
                .where(cron_run_log_table.c.id == handle.log_id)
                .values(**values)
            )
    except Exception as e:
        logger.warning(
            f"cron_run_log: update failed for log_id={handle.log_id} "
            f"({handle.cron_name}): {type(e).__name__}: {e}"
        )


def _duration_ms(handle: CronLogHandle) -> int:
    return int((time.monotonic() - handle.started_at) * 1000)


def log_cron_complete(handle: CronLogHandle, summary: Dict[str, Any], *, engine=None) -> None:
    _finish(
        handle,
        {
            "status": "success",
            "completed_at": _now_utc(),
            "duration_ms": _duration_ms(handle),
            "summary_json": json.dumps(summary, ensure_ascii=False, default=str),
        },
        engine=engine,
    )


def log_cron_failed(handle: CronLogHandle, error_message: str, *, engine=None) -> None:
    _finish(
        handle,
        {
            "status": "failed",
            "completed_at": _now_utc(),
            "duration_ms": _duration_ms(handle),
            "error_message": error_message[:5000],
        },
        engine=engine,
    )


def log_cron_halted(cron_name: str, *, engine=None) -> None:
    now = _now_utc()
    try:
        with (engine or default_engine).begin() as conn:
            conn.execute(
                insert(cron_run_log_table).values(
                    id=str(uuid.uuid4()),
                    cron_name=cron_name,
                    status="halted",
                    started_at=now,
                    completed_at=now,
                    duration_ms=0,
                )
            )
    except Exception as e:
        logger.warning(f"log_cron_halted: insert failed for {cron_name}: {type(e).__name__}: {e}")


def find_stale_runs(threshold: datetime, *, conn) -> List[Dict[str, Any]]:
    t = cron_run_log_table
    rows = conn.execute(
        select(t.c.id, t.c.cron_name, t.c.started_at)
        .where(and_(t.c.status == "running", t.c.started_at < threshold))
        .order_by(t.c.started_at)
    ).mappings().all()
    return [{**dict(r), "started_at": _as_utc(r["started_at"])} for r in rows]


def mark_runs_timeout(log_ids: List[str], reason: str, *, conn) -> int:
    if not log_ids:
        return 0
    t = cron_run_log_table
    res = conn.execute(
        update(t)
        .where(and_(t.c.id.in_(log_ids), t.c.status == "running"))
        .values(status="timeout", completed_at=_now_utc(), error_message=reason)
    )
    return res.rowcount or 0


def get_last_runs(cron_name: str, limit: int = 10, *, conn) -> List[Dict[str, Any]]:
    t = cron_run_log_table
    rows = conn.execute(
        select(t).where(t.c.cron_name == cron_name).order_by(t.c.started_at.desc()).limit(limit)
    ).mappings().all()
    result = []
    for r in rows:
        item = dict(r)
        summary = item.pop("summary_json", None)
        item["summary"] = json.loads(summary) if summary else None
        item["started_at"] = _as_utc(item["started_at"])
        item["completed_at"] = _as_utc(item["completed_at"])
        result.append(item)
    return result
