"""`run_<job>_for_all_locations(engine) -> BatchResult` for every batch job.

Each one composes the job's enumerator, eligibility predicate and registered
per-tenant processor into a BatchRunner. The HTTP trigger and the Celery Beat
task depend only on this signature (see JOB_RUNNERS).
"""

from __future__ import annotations

from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tenantcron.db import engine as default_engine
from tenantcron.services.batch.result import BatchResult
from tenantcron.services.batch.runner import BatchRunner
from tenantcron.services.jobs import definitions as defs
from tenantcron.services.jobs.definitions import JobDefinition
from tenantcron.services.jobs.processors import get_processor
from tenantcron.services.tenants import (
    TenantHandle,
    enumerate_locations,
    enumerate_organizations,
    plan_satisfies,
)

BatchJobRunner = Callable[..., Awaitable[BatchResult]]

_ENUMERATORS = {
    "location": enumerate_locations,
    "organization": enumerate_organizations,
}


def _load_tenants(job: JobDefinition, engine) -> List[TenantHandle]:
    with engine.connect() as conn:
        return _ENUMERATORS[job.iteration_unit](conn)


async def run_job_for_all_tenants(
    job: JobDefinition,
    engine=None,
    **runner_options: Any,
) -> BatchResult:
    engine = engine or default_engine
    # Resolve before enumerating so a missing processor fails the invocation early.
    spec = get_processor(job.job_name)

    def is_eligible(tenant: TenantHandle) -> bool:
        if not plan_satisfies(tenant.plan_tier, job.min_plan):
            return False
        return spec.applies_to is None or bool(spec.applies_to(tenant))

    runner = BatchRunner(
        job.job_name,
        partial(_load_tenants, job, engine),
        partial(spec.process, engine=engine),
        is_eligible=is_eligible,
        counter_names=job.summary_counters,
        **runner_options,
    )
    return await runner.run()


async def run_authority_mapping_for_all_locations(engine=None, **options: Any) -> BatchResult:
    return await run_job_for_all_tenants(defs.AUTHORITY_MAPPING, engine, **options)


async def run_nap_sync_for_all_locations(engine=None, **options: Any) -> BatchResult:
    return await run_job_for_all_tenants(defs.NAP_SYNC, engine, **options)


async def run_review_sync_for_all_locations(engine=None, **options: Any) -> BatchResult:
    return await run_job_for_all_tenants(defs.REVIEW_SYNC, engine, **options)


async def run_schema_drift_for_all_locations(engine=None, **options: Any) -> BatchResult:
    return await run_job_for_all_tenants(defs.SCHEMA_DRIFT, engine, **options)


async def run_vaio_for_all_locations(engine=None, **options: Any) -> BatchResult:
    return await run_job_for_all_tenants(defs.VAIO, engine, **options)


async def run_citation_intelligence_for_all_orgs(engine=None, **options: Any) -> BatchResult:
    return await run_job_for_all_tenants(defs.CITATION_INTELLIGENCE, engine, **options)


JOB_RUNNERS: Dict[str, BatchJobRunner] = {
    defs.AUTHORITY_MAPPING.job_name: run_authority_mapping_for_all_locations,
    defs.NAP_SYNC.job_name: run_nap_sync_for_all_locations,
    defs.REVIEW_SYNC.job_name: run_review_sync_for_all_locations,
    defs.SCHEMA_DRIFT.job_name: run_schema_drift_for_all_locations,
    defs.VAIO.job_name: run_vaio_for_all_locations,
    defs.CITATION_INTELLIGENCE.job_name: run_citation_intelligence_for_all_orgs,
}


def get_job_runner(job_name: str) -> Optional[BatchJobRunner]:
    return JOB_RUNNERS.get(job_name)
