"""Per-job kill switches (STOP_<JOB>_CRON).

A snapshot is taken once at the start of an invocation and passed down.
Flipping a flag mid-run affects the next invocation only.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Union


def kill_switch_env_key(job_name: str) -> str:
    """'review-sync' -> 'STOP_REVIEW_SYNC_CRON'."""
    return f"STOP_{job_name.upper().replace('-', '_')}_CRON"


@dataclass(frozen=True)
class KillSwitchSnapshot:
    """Read-only view of the kill switches at one point in time."""

    halted: Mapping[str, bool] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        jobs: Union[Mapping[str, str], Iterable[str]],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "KillSwitchSnapshot":
        """`jobs` maps job name to its env key; bare names use the derived key."""
        env = os.environ if environ is None else environ
        if not isinstance(jobs, Mapping):
            jobs = {name: kill_switch_env_key(name) for name in jobs}
        halted = {}
        for name, env_key in jobs.items():
            # Only the exact string "true" halts a job.
            halted[name] = env.get(env_key) == "true"
        return cls(halted=dict(halted))

    def is_halted(self, job_name: str) -> bool:
        return self.halted.get(job_name, False)

    def halted_jobs(self) -> list[str]:
        return sorted(name for name, flag in self.halted.items() if flag)
