"""Job catalogue: every scheduled job the orchestration layer knows about.

Iteration unit per job (what `processed` counts):

- authority-mapping, nap-sync, review-sync, schema-drift, vaio: one location
- citation-intelligence: one organization (scoped by org, primary location attached)
- token-refresh, places-refresh: event-dispatched durable functions, no BatchResult
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Tuple

from tenantcron.services.kill_switch import kill_switch_env_key
from tenantcron.services.scheduling.cron import validate_cron
from tenantcron.services.tenants import PlanTier

IterationUnit = Literal["location", "organization", "event"]


class JobNotFound(Exception):
    """Raised when no job is registered under the requested name."""


@dataclass(frozen=True)
class JobDefinition:
    job_name: str
    schedule: str
    iteration_unit: IterationUnit
    description: str
    min_plan: PlanTier = PlanTier.GROWTH
    dispatch_event: Optional[str] = None
    summary_counters: Tuple[str, ...] = ()
    timezone: str = "UTC"
    kill_switch_env_key: str = field(default="")

    def __post_init__(self) -> None:
        validate_cron(self.schedule)
        if not self.kill_switch_env_key:
            object.__setattr__(self, "kill_switch_env_key", kill_switch_env_key(self.job_name))
        if (self.iteration_unit == "event") != (self.dispatch_event is not None):
            raise ValueError(f"{self.job_name}: event jobs (and only they) must set dispatch_event")

    @property
    def is_event_job(self) -> bool:
        return self.dispatch_event is not None


AUTHORITY_MAPPING = JobDefinition(
    job_name="authority-mapping",
    schedule="0 5 * * 1",
    iteration_unit="location",
    description="Map entity authority sources for each location",
    kill_switch_env_key="STOP_AUTHORITY_CRON",
)
NAP_SYNC = JobDefinition(
    job_name="nap-sync",
    schedule="0 3 * * *",
    iteration_unit="location",
    description="Sync name/address/phone listings and detect discrepancies",
)
REVIEW_SYNC = JobDefinition(
    job_name="review-sync",
    schedule="0 */6 * * *",
    iteration_unit="location",
    description="Fetch and classify new reviews",
)
SCHEMA_DRIFT = JobDefinition(
    job_name="schema-drift",
    schedule="0 4 * * *",
    iteration_unit="location",
    description="Re-crawl websites and score structured-data drift",
)
VAIO = JobDefinition(
    job_name="vaio",
    schedule="0 6 * * 1",
    iteration_unit="location",
    description="Voice and AI optimisation scan",
    summary_counters=("voice_queries_tested", "voice_gaps_found"),
)
CITATION_INTELLIGENCE = JobDefinition(
    job_name="citation-intelligence",
    schedule="0 7 * * *",
    iteration_unit="organization",
    description="Sample AI citation sources per organization market",
    kill_switch_env_key="STOP_CITATION_CRON",
)
TOKEN_REFRESH = JobDefinition(
    job_name="token-refresh",
    schedule="*/15 * * * *",
    iteration_unit="event",
    description="Refresh Google OAuth tokens close to expiry",
    dispatch_event="gbp/token.refresh",
)
PLACES_REFRESH = JobDefinition(
    job_name="places-refresh",
    schedule="0 2 * * *",
    iteration_unit="event",
    description="Refresh stale Google Places details",
    dispatch_event="places/details.refresh",
)

JOB_DEFINITIONS: Dict[str, JobDefinition] = {
    job.job_name: job
    for job in (
        AUTHORITY_MAPPING,
        NAP_SYNC,
        REVIEW_SYNC,
        SCHEMA_DRIFT,
        VAIO,
        CITATION_INTELLIGENCE,
        TOKEN_REFRESH,
        PLACES_REFRESH,
    )
}


def get_job_definition(job_name: str) -> JobDefinition:
    try:
        return JOB_DEFINITIONS[job_name]
    except KeyError:
        raise JobNotFound(f"Unknown job: {job_name}") from None
