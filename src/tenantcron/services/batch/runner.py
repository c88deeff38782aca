"""Per-tenant batch runner.

Idle -> Enumerating -> Processing -> Reporting -> Done.

Every tenant is attempted at most once per invocation. A tenant that raises is
recorded as a failed TenantOutcome and never aborts the loop; enumeration
errors are not caught here and abort the invocation before any tenant work.

Sync processors run on a pool owned by the run. When the time budget is
exceeded the pool is shut down without waiting, so a stuck thread cannot hold
the invocation past its budget (the thread itself finishes in the background).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Union

from tenantcron import settings
from tenantcron.services.batch.result import BatchResult, TenantOutcome
from tenantcron.services.tenants import TenantHandle

logger = logging.getLogger(__name__)

MaybeAwaitable = Union[Any, Awaitable[Any]]
Enumerator = Callable[[], MaybeAwaitable]
TenantProcessor = Callable[[TenantHandle], MaybeAwaitable]
EligibilityPredicate = Callable[[TenantHandle], bool]


class RunnerState(str, Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    PROCESSING = "processing"
    REPORTING = "reporting"
    DONE = "done"


def _int_counters(value: Any) -> dict[str, int]:
    if not isinstance(value, dict):
        return {}
    return {
        str(k): int(v)
        for k, v in value.items()
        if isinstance(v, int) and not isinstance(v, bool)
    }


class BatchRunner:
    def __init__(
        self,
        job_name: str,
        enumerate_tenants: Enumerator,
        process_tenant: TenantProcessor,
        *,
        is_eligible: Optional[EligibilityPredicate] = None,
        max_concurrency: int = settings.BATCH_MAX_CONCURRENCY,
        time_budget_seconds: Optional[float] = settings.BATCH_TIME_BUDGET_SECONDS,
        max_error_details: int = settings.BATCH_MAX_ERROR_DETAILS,
        max_message_chars: int = settings.BATCH_ERROR_MESSAGE_MAX_CHARS,
        counter_names: Sequence[str] = (),
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.job_name = job_name
        self._enumerate = enumerate_tenants
        self._process = process_tenant
        self._is_eligible = is_eligible
        self._max_concurrency = max_concurrency
        self._time_budget_seconds = time_budget_seconds
        self._max_error_details = max_error_details
        self._max_message_chars = max_message_chars
        self._counter_names = tuple(counter_names)
        self.state = RunnerState.IDLE

    async def run(self) -> BatchResult:
        if self.state is not RunnerState.IDLE:
            raise RuntimeError(f"BatchRunner for {self.job_name} has already run")

        started = time.monotonic()
        result = BatchResult(
            counters={name: 0 for name in self._counter_names},
            max_error_details=self._max_error_details,
            max_message_chars=self._max_message_chars,
        )

        self.state = RunnerState.ENUMERATING
        tenants = await self._load_tenants()

        eligible: List[TenantHandle] = []
        for tenant in tenants:
            if self._is_eligible is None or self._is_eligible(tenant):
                eligible.append(tenant)
            else:
                result.record_skipped()

        logger.info(
            f"batch[{self.job_name}]: enumerated={len(tenants)} eligible={len(eligible)} "
            f"skipped={result.skipped} concurrency={self._max_concurrency}"
        )

        self.state = RunnerState.PROCESSING
        await self._process_all(eligible, result)

        self.state = RunnerState.REPORTING
        result.seal(duration_ms=(time.monotonic() - started) * 1000)
        self._log_result(result)

        self.state = RunnerState.DONE
        return result

    async def _load_tenants(self) -> List[TenantHandle]:
        value = self._enumerate()
        if inspect.isawaitable(value):
            value = await value
        return list(value or [])

    async def _process_all(self, tenants: Iterable[TenantHandle], result: BatchResult) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency)
        executor = ThreadPoolExecutor(
            max_workers=self._max_concurrency,
            thread_name_prefix=f"batch-{self.job_name}",
        )
        try:
            tasks = [asyncio.create_task(self._attempt(t, semaphore, executor)) for t in tenants]
            if not tasks:
                return
            done, pending = await asyncio.wait(tasks, timeout=self._time_budget_seconds)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if pending:
            logger.warning(
                f"batch[{self.job_name}]: time budget of {self._time_budget_seconds}s exceeded, "
                f"cancelling {len(pending)} unfinished tenants"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            result.mark_cancelled(pending=len(pending))

        # Single aggregation point, in enumeration order.
        for task in tasks:
            if task in done:
                result.record(task.result())

    async def _attempt(
        self,
        tenant: TenantHandle,
        semaphore: asyncio.Semaphore,
        executor: ThreadPoolExecutor,
    ) -> TenantOutcome:
        async with semaphore:
            try:
                if inspect.iscoroutinefunction(self._process):
                    value = await self._process(tenant)
                else:
                    loop = asyncio.get_running_loop()
                    value = await loop.run_in_executor(executor, self._process, tenant)
                    if inspect.isawaitable(value):
                        value = await value
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.warning(
                    f"batch[{self.job_name}]: tenant {tenant.tenant_id} failed: "
                    f"{type(exc).__name__}: {message}",
                    exc_info=True,
                )
                return TenantOutcome(tenant_id=tenant.tenant_id, ok=False, error=message)
        return TenantOutcome(tenant_id=tenant.tenant_id, ok=True, counters=_int_counters(value))

    def _log_result(self, result: BatchResult) -> None:
        logger.info(f"batch[{self.job_name}]: completed {result.to_log_dict()}")
        if result.errors:
            logger.warning(
                f"batch[{self.job_name}]: {result.errors} of {result.processed} tenants failed"
            )
