import secrets
import time
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import croniter


class ScheduleError(ValueError):
    """Raised when a schedule value does not fit its schedule type."""


def new_task_id() -> str:
    return f"task-{time.time_ns() // 1_000_000}-{secrets.token_hex(3)}"


def _parse_interval(schedule_value: str) -> int:
    try:
        ms = int(schedule_value)
    except (TypeError, ValueError):
        raise ScheduleError(
            f"Invalid interval: {schedule_value!r} (must be positive milliseconds)"
        ) from None
    if ms <= 0:
        raise ScheduleError(
            f"Invalid interval: {schedule_value!r} (must be positive milliseconds)"
        )
    return ms


def _parse_once(schedule_value: str, tz: str) -> datetime:
    """Parse a one-shot timestamp.  Naive values are local time in *tz*."""
    try:
        when = datetime.fromisoformat(schedule_value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        raise ScheduleError(
            f"Invalid timestamp: {schedule_value!r} "
            "(use local ISO like 2026-02-01T15:30:00)"
        ) from None
    if when.tzinfo is None:
        when = when.replace(tzinfo=ZoneInfo(tz))
    return when.astimezone(timezone.utc)


def validate_schedule(schedule_type: str, schedule_value: str, tz: str = "UTC") -> None:
    """Raise :class:`ScheduleError` if the schedule can never produce a run."""
    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ScheduleError(f"Invalid cron expression: {schedule_value!r}")
    elif schedule_type == "interval":
        _parse_interval(schedule_value)
    elif schedule_type == "once":
        _parse_once(schedule_value, tz)
    else:
        raise ScheduleError(f"Unknown schedule type: {schedule_type!r}")


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    base: datetime | None = None,
    tz: str = "UTC",
) -> str | None:
    """Compute the first run time for a newly created or resumed task.

    Returns a UTC ISO 8601 string:
    - "cron": next fire time strictly after *base*, evaluated in *tz*
    - "interval": *base* + milliseconds offset
    - "once": the given timestamp (naive values are local time in *tz*)
    """
    validate_schedule(schedule_type, schedule_value, tz)
    if base is None:
        base = datetime.now(timezone.utc)

    if schedule_type == "cron":
        local_base = base.astimezone(ZoneInfo(tz))
        fire = croniter(schedule_value, local_base).get_next(datetime)
        return fire.astimezone(timezone.utc).isoformat()
    if schedule_type == "interval":
        interval = timedelta(milliseconds=_parse_interval(schedule_value))
        return (base + interval).astimezone(timezone.utc).isoformat()
    return _parse_once(schedule_value, tz).isoformat()


def compute_next_run_after_execution(
    schedule_type: str,
    schedule_value: str,
    base: datetime | None = None,
    tz: str = "UTC",
) -> str | None:
    """Compute the next run time after a task has executed.

    ``once`` tasks are never rescheduled, so this returns ``None`` for them
    regardless of how the run went.
    """
    if schedule_type == "once":
        return None
    return compute_next_run(schedule_type, schedule_value, base=base, tz=tz)
