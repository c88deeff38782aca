"""Durable step execution backed by a step-completion ledger.

A durable function is replayed from the top on every delivery (first run,
Celery retry, duplicate delivery). Each `await step.run(name, body)` checks
the ledger keyed by (run_id, step_name) first: a completed step returns its
stored output and `body` is not called again. A failing step raises
StepFailed, which the Celery task turns into a retry with backoff; only the
failed step (and the ones after it) execute on the next delivery. Per-tenant
steps go through `step.run_all`, which attempts every sibling before
re-raising, so one tenant's failing step never holds back another tenant.

Step bodies must still be idempotent: a step may run twice if its success
was not persisted (process killed between side effect and ledger write).
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, insert, select, update

from tenantcron import settings
from tenantcron.db import engine as default_engine
from tenantcron.models import durable_runs_table, durable_steps_table

logger = logging.getLogger(__name__)


class StepFailed(Exception):
    """Raised when one attempt of a step fails; the enclosing function is retried."""

    def __init__(self, step_name: str, attempt: int, message: str) -> None:
        super().__init__(f"step '{step_name}' failed (attempt {attempt}): {message}")
        self.step_name = step_name
        self.attempt = attempt
        self.message = message


class StepAttemptsExhausted(Exception):
    """Raised when a step has used all of its attempts; the run is failed."""

    def __init__(self, step_name: str, attempts: int, last_error: Optional[str]) -> None:
        super().__init__(
            f"step '{step_name}' exhausted {attempts} attempts; last error: {last_error}"
        )
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error


class DuplicateStepName(Exception):
    """Raised when a function uses the same step name twice within one run."""


class DurableRunNotFound(Exception):
    """Raised when a durable run id is unknown."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class StepExecutionRecord:
    step_name: str
    status: str
    attempt_count: int
    last_error: Optional[str]
    completed_at: Optional[datetime]
    output: Any = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class StepLedger:
    """Persistence for StepExecutionRecords (durable_steps table)."""

    def __init__(self, engine=None) -> None:
        self._engine = engine or default_engine

    def get(self, run_id: str, step_name: str) -> Optional[StepExecutionRecord]:
        t = durable_steps_table
        with self._engine.connect() as conn:
            row = conn.execute(
                select(t).where(and_(t.c.run_id == run_id, t.c.step_name == step_name))
            ).mappings().first()
        return self._to_record(row) if row else None

    def list_steps(self, run_id: str) -> List[StepExecutionRecord]:
        t = durable_steps_table
        with self._engine.connect() as conn:
            rows = conn.execute(select(t).where(t.c.run_id == run_id)).mappings().all()
        return [self._to_record(r) for r in rows]

    def begin_attempt(self, run_id: str, step_name: str) -> int:
        """Increment and return the attempt counter for a step."""
        t = durable_steps_table
        with self._engine.begin() as conn:
            row = conn.execute(
                select(t.c.attempt_count).where(
                    and_(t.c.run_id == run_id, t.c.step_name == step_name)
                )
            ).first()
            if row is None:
                conn.execute(
                    insert(t).values(
                        run_id=run_id,
                        step_name=step_name,
                        status="running",
                        attempt_count=1,
                    )
                )
                return 1
            attempt = int(row[0]) + 1
            conn.execute(
                update(t)
                .where(and_(t.c.run_id == run_id, t.c.step_name == step_name))
                .values(status="running", attempt_count=attempt)
            )
            return attempt

    def record_success(self, run_id: str, step_name: str, output: Any) -> None:
        t = durable_steps_table
        with self._engine.begin() as conn:
            conn.execute(
                update(t)
                .where(and_(t.c.run_id == run_id, t.c.step_name == step_name))
                .values(
                    status="completed",
                    output_json=_dumps(output),
                    last_error=None,
                    completed_at=_now_utc(),
                )
            )

    def record_failure(self, run_id: str, step_name: str, error: str) -> None:
        t = durable_steps_table
        with self._engine.begin() as conn:
            conn.execute(
                update(t)
                .where(and_(t.c.run_id == run_id, t.c.step_name == step_name))
                .values(status="failed", last_error=error[:5000])
            )

    @staticmethod
    def _to_record(row: Any) -> StepExecutionRecord:
        output_json = row["output_json"]
        return StepExecutionRecord(
            step_name=row["step_name"],
            status=row["status"],
            attempt_count=int(row["attempt_count"] or 0),
            last_error=row["last_error"],
            completed_at=_as_utc(row["completed_at"]),
            output=json.loads(output_json) if output_json is not None else None,
        )


class StepContext:
    """The `step` object handed to a durable function handler."""

    def __init__(
        self,
        run_id: str,
        ledger: StepLedger,
        *,
        max_attempts: int,
        max_step_seconds: Optional[float],
    ) -> None:
        self.run_id = run_id
        self._ledger = ledger
        self._max_attempts = max_attempts
        self._max_step_seconds = max_step_seconds
        self._seen: set[str] = set()
        self.executed: List[str] = []
        self.replayed: List[str] = []

    async def run(self, name: str, body: Callable[[], Any]) -> Any:
        if name in self._seen:
            raise DuplicateStepName(f"step name '{name}' used twice in run {self.run_id}")
        self._seen.add(name)

        record = self._ledger.get(self.run_id, name)
        if record is not None and record.completed:
            self.replayed.append(name)
            return record.output
        if record is not None and record.attempt_count >= self._max_attempts:
            raise StepAttemptsExhausted(name, record.attempt_count, record.last_error)

        attempt = self._ledger.begin_attempt(self.run_id, name)
        self.executed.append(name)
        try:
            output = await asyncio.wait_for(self._call(body), timeout=self._max_step_seconds)
        except asyncio.TimeoutError:
            message = f"timed out after {self._max_step_seconds}s"
            self._ledger.record_failure(self.run_id, name, message)
            logger.warning(f"durable[{self.run_id}]: step '{name}' attempt {attempt} {message}")
            raise StepFailed(name, attempt, message) from None
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            self._ledger.record_failure(self.run_id, name, message)
            logger.warning(f"durable[{self.run_id}]: step '{name}' attempt {attempt} failed: {message}")
            raise StepFailed(name, attempt, message) from exc

        # Normalise through JSON so first execution and replay return the same shape.
        output = json.loads(_dumps(output))
        self._ledger.record_success(self.run_id, name, output)
        return output

    async def run_all(
        self,
        steps: Sequence[Tuple[str, Callable[[], Any]]],
        *,
        max_concurrency: int = settings.BATCH_MAX_CONCURRENCY,
    ) -> List[Any]:
        """Attempt every step of a fan-out in this delivery, outputs in input order.

        A failing step never keeps its siblings from running. A step with no
        attempts left yields its StepAttemptsExhausted in place of an output so
        the caller can count it as that tenant's failure. Once every step has
        been attempted, the first StepFailed is re-raised; the next delivery
        replays the completed steps and retries only the failed ones.
        """
        names = [name for name, _ in steps]
        if len(set(names)) != len(names):
            raise DuplicateStepName(f"duplicate step names in fan-out for run {self.run_id}")

        semaphore = asyncio.Semaphore(max_concurrency)

        async def attempt(name: str, body: Callable[[], Any]) -> Any:
            async with semaphore:
                return await self.run(name, body)

        outcomes = await asyncio.gather(
            *(attempt(name, body) for name, body in steps),
            return_exceptions=True,
        )

        first_failure: Optional[StepFailed] = None
        for outcome in outcomes:
            if isinstance(outcome, StepAttemptsExhausted):
                logger.error(f"durable[{self.run_id}]: {outcome}")
            elif isinstance(outcome, StepFailed):
                first_failure = first_failure or outcome
            elif isinstance(outcome, BaseException):
                raise outcome
        if first_failure is not None:
            raise first_failure
        return list(outcomes)

    @staticmethod
    async def _call(body: Callable[[], Any]) -> Any:
        if inspect.iscoroutinefunction(body):
            return await body()
        value = await asyncio.to_thread(body)
        if inspect.isawaitable(value):
            value = await value
        return value


Handler = Callable[[Dict[str, Any], StepContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class DurableFunction:
    function_id: str
    event_name: str
    handler: Handler
    max_step_seconds: Optional[float] = 60.0
    max_attempts: int = field(default=settings.DURABLE_MAX_ATTEMPTS)


# === durable_runs ===


def create_run(
    function_id: str,
    event_name: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    engine=None,
) -> str:
    run_id = str(uuid.uuid4())
    now = _now_utc()
    with (engine or default_engine).begin() as conn:
        conn.execute(
            insert(durable_runs_table).values(
                run_id=run_id,
                function_id=function_id,
                event_name=event_name,
                payload_json=_dumps(payload or {}),
                status="queued",
                attempts=0,
                created_at=now,
                updated_at=now,
            )
        )
    return run_id


def get_run(run_id: str, *, engine=None) -> Optional[Dict[str, Any]]:
    t = durable_runs_table
    with (engine or default_engine).connect() as conn:
        row = conn.execute(select(t).where(t.c.run_id == run_id)).mappings().first()
    if not row:
        return None
    run = dict(row)
    run["payload"] = json.loads(run.pop("payload_json") or "{}")
    result_json = run.pop("result_json")
    run["result"] = json.loads(result_json) if result_json else None
    return run


def _update_run(run_id: str, values: Dict[str, Any], *, engine=None) -> None:
    with (engine or default_engine).begin() as conn:
        conn.execute(
            update(durable_runs_table)
            .where(durable_runs_table.c.run_id == run_id)
            .values(updated_at=_now_utc(), **values)
        )


def mark_run_running(run_id: str, attempts: int, *, engine=None) -> None:
    _update_run(run_id, {"status": "running", "attempts": attempts}, engine=engine)


def mark_run_retrying(run_id: str, error: str, *, engine=None) -> None:
    _update_run(run_id, {"status": "retrying", "error_message": error[:5000]}, engine=engine)


def mark_run_completed(run_id: str, result: Dict[str, Any], *, engine=None) -> None:
    _update_run(
        run_id,
        {"status": "completed", "result_json": _dumps(result), "error_message": None, "finished_at": _now_utc()},
        engine=engine,
    )


def mark_run_failed(run_id: str, error: str, *, engine=None) -> None:
    _update_run(
        run_id,
        {"status": "failed", "error_message": error[:5000], "finished_at": _now_utc()},
        engine=engine,
    )


async def execute_function(fn: DurableFunction, run_id: str, *, engine=None) -> Dict[str, Any]:
    """Execute (or replay) one delivery of a durable function run.

    Raises StepFailed for a retryable step failure and StepAttemptsExhausted
    once a step has no attempts left (the run is then marked failed).
    """
    run = get_run(run_id, engine=engine)
    if run is None:
        raise DurableRunNotFound(f"durable run {run_id} not found")
    if run["status"] == "completed":
        logger.info(f"durable[{run_id}]: {fn.function_id} already completed, returning stored result")
        return run["result"] or {}
    if run["status"] == "failed":
        logger.info(f"durable[{run_id}]: {fn.function_id} already failed, not re-executing")
        return {"ok": False, "error": run["error_message"]}

    attempts = int(run["attempts"] or 0) + 1
    mark_run_running(run_id, attempts, engine=engine)
    step = StepContext(
        run_id,
        StepLedger(engine),
        max_attempts=fn.max_attempts,
        max_step_seconds=fn.max_step_seconds,
    )
    logger.info(f"durable[{run_id}]: executing {fn.function_id} (delivery {attempts})")

    try:
        result = await fn.handler(run["payload"], step)
    except StepFailed as exc:
        mark_run_retrying(run_id, str(exc), engine=engine)
        raise
    except Exception as exc:
        mark_run_failed(run_id, f"{type(exc).__name__}: {exc}", engine=engine)
        logger.error(f"durable[{run_id}]: {fn.function_id} failed: {type(exc).__name__}: {exc}")
        raise

    result = json.loads(_dumps(result or {}))
    mark_run_completed(run_id, result, engine=engine)
    logger.info(
        f"durable[{run_id}]: {fn.function_id} completed "
        f"executed={len(step.executed)} replayed={len(step.replayed)}"
    )
    return result


async def run_until_settled(fn: DurableFunction, run_id: str, *, engine=None) -> Dict[str, Any]:
    """Inline execution without a broker: redeliver immediately until the run settles.

    Terminates because every StepFailed consumes one of the step's bounded attempts.
    """
    while True:
        try:
            return await execute_function(fn, run_id, engine=engine)
        except StepFailed as exc:
            logger.warning(f"durable[{run_id}]: inline redelivery after {exc}")
