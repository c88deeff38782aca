"""Terminal sink for cron invocations: log line, error tracking, JSON payload."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from tenantcron import settings
from tenantcron.services.batch.result import BatchResult

logger = logging.getLogger(__name__)


class ErrorTracker(Protocol):
    def capture_exception(self, err: BaseException, tags: Mapping[str, str]) -> None:
        ...


class LoggingErrorTracker:
    """Default tracker: records captured exceptions in the application log."""

    def __init__(self, logger_name: str = "tenantcron.errors") -> None:
        self._logger = logging.getLogger(logger_name)

    def capture_exception(self, err: BaseException, tags: Mapping[str, str]) -> None:
        tag_str = " ".join(f"{k}={v}" for k, v in sorted(tags.items()))
        self._logger.error(
            f"captured exception [{tag_str}]: {type(err).__name__}: {err}",
            exc_info=(type(err), err, err.__traceback__),
        )


_error_tracker: ErrorTracker = LoggingErrorTracker()


def get_error_tracker() -> ErrorTracker:
    return _error_tracker


def set_error_tracker(tracker: ErrorTracker) -> None:
    global _error_tracker
    _error_tracker = tracker


class ResultReporter:
    def __init__(self, tracker: Optional[ErrorTracker] = None, version: str = settings.APP_VERSION) -> None:
        self._tracker = tracker
        self._version = version

    @property
    def tracker(self) -> ErrorTracker:
        return self._tracker or get_error_tracker()

    def tags(self, job_name: str) -> Dict[str, str]:
        return {"job": job_name, "version": self._version}

    def report(
        self,
        job_name: str,
        result: Optional[BatchResult],
        error: Optional[BaseException] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Return (http_status, payload). Never raises."""
        if error is not None or result is None:
            return self._report_failure(job_name, error or RuntimeError("no result"))
        try:
            payload: Dict[str, Any] = {"ok": True, **result.to_summary()}
            logger.info(f"cron[{job_name}]: run complete {result.to_log_dict()}")
            if result.errors:
                logger.warning(
                    f"cron[{job_name}]: partial failure, {result.errors} of "
                    f"{result.processed} tenants errored"
                )
            return 200, payload
        except Exception as exc:  # pragma: no cover
            return self._report_failure(job_name, exc)

    def report_halted(self, job_name: str) -> Tuple[int, Dict[str, Any]]:
        logger.info(f"cron[{job_name}]: halted by kill switch")
        return 200, {"ok": True, "halted": True}

    def report_skipped(self, job_name: str, reason: str) -> Tuple[int, Dict[str, Any]]:
        logger.info(f"cron[{job_name}]: skipped ({reason})")
        return 200, {"ok": True, "skipped": True, "reason": reason}

    def report_dispatched(self, job_name: str, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        logger.info(f"cron[{job_name}]: event dispatched {payload}")
        return 200, {"ok": True, **payload}

    def _report_failure(self, job_name: str, error: BaseException) -> Tuple[int, Dict[str, Any]]:
        message = str(error) or type(error).__name__
        try:
            self.tracker.capture_exception(error, self.tags(job_name))
        except Exception as track_exc:
            logger.warning(
                f"cron[{job_name}]: error tracker failed: {type(track_exc).__name__}: {track_exc}"
            )
        logger.error(f"cron[{job_name}]: invocation failed: {message}")
        return 500, {"error": message}
