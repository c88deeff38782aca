from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class TenantOutcome:
    """Result of one attempt of the per-tenant unit of work."""

    tenant_id: str
    ok: bool
    error: Optional[str] = None
    counters: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorDetail:
    tenant_id: str
    message: str


class BatchResultSealed(Exception):
    """Raised when a sealed BatchResult is mutated."""


@dataclass
class BatchResult:
    """Aggregate outcome of one batch invocation.

    `processed` counts attempts (a failing tenant counts here once, and once in
    `errors`). `skipped` counts tenants rejected by the eligibility predicate,
    so processed + skipped == enumerated unless the run was cancelled.
    """

    processed: int = 0
    errors: int = 0
    skipped: int = 0
    error_details: List[ErrorDetail] = field(default_factory=list)
    duration_ms: int = 0
    counters: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    pending: int = 0
    max_error_details: int = 50
    max_message_chars: int = 500
    _sealed: bool = field(default=False, repr=False)

    @property
    def succeeded(self) -> int:
        return self.processed - self.errors

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _check_open(self) -> None:
        if self._sealed:
            raise BatchResultSealed("BatchResult is sealed; it cannot change after reporting")

    def record(self, outcome: TenantOutcome) -> None:
        self._check_open()
        self.processed += 1
        for key, value in outcome.counters.items():
            self.counters[key] = self.counters.get(key, 0) + value
        if outcome.ok:
            return
        self.errors += 1
        if len(self.error_details) < self.max_error_details:
            message = (outcome.error or "unknown error")[: self.max_message_chars]
            self.error_details.append(ErrorDetail(tenant_id=outcome.tenant_id, message=message))

    def record_skipped(self, count: int = 1) -> None:
        self._check_open()
        self.skipped += count

    def mark_cancelled(self, pending: int) -> None:
        self._check_open()
        self.cancelled = True
        self.pending = pending

    def seal(self, duration_ms: int) -> "BatchResult":
        self._check_open()
        self.duration_ms = max(0, int(duration_ms))
        self._sealed = True
        return self

    def to_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "processed": self.processed,
            "errors": self.errors,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            **self.counters,
        }
        if self.cancelled:
            summary["cancelled"] = True
            summary["pending"] = self.pending
        return summary

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            **self.to_summary(),
            "error_details": [
                {"tenant_id": d.tenant_id, "message": d.message} for d in self.error_details
            ],
        }
