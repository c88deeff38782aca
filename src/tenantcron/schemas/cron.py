from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CronJobInfo(BaseModel):
    job_name: str
    schedule: str
    schedule_human: str
    iteration_unit: str
    description: str
    min_plan: Optional[str] = Field(None, description="Minimum plan tier; null for event jobs")
    dispatch_event: Optional[str] = None
    kill_switch_env_key: str
    halted: bool
    next_run_at: Optional[datetime] = None


class CronJobListResponse(BaseModel):
    jobs: List[CronJobInfo]
    halted_jobs: List[str]


class CronRunLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    cron_name: str
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    summary: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class CronRunLogResponse(BaseModel):
    job_name: str
    runs: List[CronRunLogEntry]
