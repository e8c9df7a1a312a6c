import re
from datetime import datetime, timedelta, timezone

import pytest

from pykobridge.scheduling import (
    ScheduleError,
    compute_next_run,
    compute_next_run_after_execution,
    new_task_id,
    validate_schedule,
)

BASE = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def test_cron_next_run_is_strictly_after_base() -> None:
    next_run = compute_next_run("cron", "0 * * * *", base=BASE)
    assert next_run == "2024-03-10T13:00:00+00:00"

    now = datetime.now(timezone.utc)
    later = compute_next_run("cron", "* * * * *")
    assert later is not None
    assert datetime.fromisoformat(later) > now


def test_cron_is_evaluated_in_configured_timezone() -> None:
    # 09:00 in New York on 2024-03-10 is 13:00 UTC (EDT starts that day).
    next_run = compute_next_run("cron", "0 9 * * *", base=BASE, tz="America/New_York")
    assert next_run == "2024-03-10T13:00:00+00:00"


def test_interval_adds_milliseconds() -> None:
    next_run = compute_next_run("interval", "60000", base=BASE)
    assert next_run == (BASE + timedelta(minutes=1)).isoformat()


@pytest.mark.parametrize("value", ["0", "-5", "abc", "1.5"])
def test_interval_must_be_positive_integer(value: str) -> None:
    with pytest.raises(ScheduleError):
        validate_schedule("interval", value)


def test_once_naive_timestamp_is_local_time() -> None:
    next_run = compute_next_run("once", "2026-02-01T15:30:00", tz="Europe/Helsinki")
    assert next_run == "2026-02-01T13:30:00+00:00"


def test_once_accepts_utc_suffix() -> None:
    assert compute_next_run("once", "2026-02-01T15:30:00Z") == (
        "2026-02-01T15:30:00+00:00"
    )


@pytest.mark.parametrize(
    ("schedule_type", "value"),
    [
        ("cron", "not a cron"),
        ("once", "tomorrow-ish"),
        ("weekly", "monday"),
    ],
)
def test_invalid_schedules_raise(schedule_type: str, value: str) -> None:
    with pytest.raises(ScheduleError):
        compute_next_run(schedule_type, value)


def test_schedule_error_is_a_value_error() -> None:
    assert issubclass(ScheduleError, ValueError)


def test_once_is_never_rescheduled() -> None:
    assert compute_next_run_after_execution("once", "2020-01-01T00:00:00") is None


def test_recurring_tasks_are_rescheduled_after_execution() -> None:
    assert compute_next_run_after_execution(
        "interval", "1000", base=BASE
    ) == (BASE + timedelta(seconds=1)).isoformat()
    assert compute_next_run_after_execution("cron", "*/5 * * * *", base=BASE) == (
        "2024-03-10T12:05:00+00:00"
    )


def test_new_task_id_format() -> None:
    first, second = new_task_id(), new_task_id()
    assert re.fullmatch(r"task-\d+-[0-9a-f]{6}", first)
    assert first != second
