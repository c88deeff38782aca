from __future__ import annotations

from datetime import datetime, timezone as dt_timezone
from zoneinfo import ZoneInfo

from croniter import croniter


DEFAULT_TIMEZONE = "UTC"


class InvalidCronExpression(ValueError):
    """Raised when a job schedule is not a valid 5-field cron expression."""


def validate_cron(cron_expr: str) -> None:
    """Validate a 5-field cron expression.

    Raises InvalidCronExpression if invalid.
    """
    if len(cron_expr.split()) != 5:
        raise InvalidCronExpression(f"Invalid cron expression: {cron_expr}. Expected 5 fields")
    try:
        # croniter itself validates format
        croniter(cron_expr, datetime.now(dt_timezone.utc))
    except Exception as exc:
        raise InvalidCronExpression(f"Invalid cron expression: {cron_expr}. Error: {exc}") from exc


def compute_next_run(cron_expr: str, timezone: str, from_dt: datetime) -> datetime:
    """Next fire time (aware, UTC) of a job schedule evaluated in `timezone`.

    A naive `from_dt` is taken as UTC. Job listings and the run_cron_job
    script use this to show when Beat will next trigger a job.
    """
    if from_dt.tzinfo is None:
        from_dt = from_dt.replace(tzinfo=dt_timezone.utc)
    schedule_tz = ZoneInfo(timezone or DEFAULT_TIMEZONE)

    try:
        next_local = croniter(cron_expr, from_dt.astimezone(schedule_tz)).get_next(datetime)
    except Exception as exc:
        raise InvalidCronExpression(f"Invalid cron expression: {cron_expr}. Error: {exc}") from exc
    return next_local.astimezone(dt_timezone.utc)


def format_cron_human_readable(cron_expr: str) -> str:
    """Convert cron expression to human-readable format.

    Examples:
        "*/30 * * * *" -> "every 30 minutes"
        "0 */6 * * *" -> "every 6 hours"
        "0 3 * * *" -> "daily at 03:00"
        "0 5 * * 1" -> "every Monday at 05:00"
    """
    parts = cron_expr.strip().split()
    if len(parts) != 5:
        return cron_expr

    minute, hour, day_of_month, month, day_of_week = parts

    # Every N minutes
    if minute.startswith("*/") and hour == "*" and day_of_month == "*" and month == "*" and day_of_week == "*":
        try:
            n = int(minute[2:])
            if n == 1:
                return "every minute"
            elif n < 60:
                return f"every {n} minutes"
        except ValueError:
            pass

    # Every N hours (at minute 0)
    if minute == "0" and hour.startswith("*/") and day_of_month == "*" and month == "*" and day_of_week == "*":
        try:
            n = int(hour[2:])
            return "every hour" if n == 1 else f"every {n} hours"
        except ValueError:
            pass

    if minute.isdigit() and hour.isdigit() and month == "*":
        m, h = int(minute), int(hour)
        # Daily at specific time
        if day_of_month == "*" and day_of_week == "*":
            return f"daily at {h:02d}:{m:02d}"
        # Weekly on specific day
        if day_of_month == "*" and day_of_week.isdigit():
            days = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
            dow = int(day_of_week)
            if 0 <= dow <= 6:
                return f"every {days[dow]} at {h:02d}:{m:02d}"
        # Monthly on specific day
        if day_of_month.isdigit() and day_of_week == "*":
            return f"monthly on day {int(day_of_month)} at {h:02d}:{m:02d}"

    # Fallback: return original cron expression
    return cron_expr
