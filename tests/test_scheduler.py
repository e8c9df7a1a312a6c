import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from pykobridge.contracts import AgentRequest, AgentResponse
from pykobridge.db import (
    DbConnection,
    create_task,
    get_task,
    get_task_run_logs,
    init_db,
    update_task,
)
from pykobridge.models import RegisteredGroup
from pykobridge.scheduler import run_due_tasks, run_scheduler, run_task


@dataclass
class FakeHost:
    response: AgentResponse | Exception = field(
        default_factory=lambda: AgentResponse(
            status="success", result="Hello from agent"
        )
    )
    main_folder: str = "main"
    timezone: str = "UTC"
    groups: dict[str, RegisteredGroup] = field(default_factory=dict)
    calls: list[tuple[AgentRequest, bool]] = field(default_factory=list)
    sent: list[tuple[str, str]] = field(default_factory=list)
    on_run: object = None

    def group_for_folder(self, folder: str) -> RegisteredGroup | None:
        return self.groups.get(folder)

    async def run_agent(
        self,
        request: AgentRequest,
        *,
        track_session: bool,
        sandbox_config: dict | None = None,
    ) -> AgentResponse:
        self.calls.append((request, track_session))
        if callable(self.on_run):
            self.on_run(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    async def send_message(self, chat_id: str, text: str) -> str | None:
        self.sent.append((chat_id, text))
        return "2024-01-01T00:00:00+00:00"


def _group(folder: str = "main") -> RegisteredGroup:
    return RegisteredGroup(
        chat_id=f"telegram:{folder}",
        name=folder,
        folder=folder,
        trigger="@Andy",
        added_at="2024-01-01T00:00:00+00:00",
    )


@pytest.fixture
def db(tmp_path: Path) -> DbConnection:
    return init_db(tmp_path / "test.db")


@pytest.fixture
def host() -> FakeHost:
    return FakeHost(groups={"main": _group("main"), "family": _group("family")})


def _create(
    db: DbConnection,
    task_id: str,
    schedule_type: str = "cron",
    schedule_value: str = "0 * * * *",
    folder: str = "main",
    context_mode: str = "isolated",
) -> None:
    create_task(
        db,
        task_id=task_id,
        group_folder=folder,
        chat_id=f"telegram:{folder}",
        prompt="test prompt",
        schedule_type=schedule_type,
        schedule_value=schedule_value,
        next_run="2020-01-01T00:00:00+00:00",
        context_mode=context_mode,
    )


def test_successful_run_is_logged_and_delivered(
    db: DbConnection, host: FakeHost
) -> None:
    _create(db, "cron-task")
    task = get_task(db, "cron-task")
    assert task is not None

    asyncio.run(run_task(task, db, host))

    updated = get_task(db, "cron-task")
    assert updated is not None
    assert updated.last_result == "Hello from agent"
    assert updated.last_run is not None
    assert updated.next_run is not None
    assert updated.next_run > "2020-01-01T00:00:00+00:00"

    logs = get_task_run_logs(db, "cron-task")
    assert len(logs) == 1
    assert logs[0].status == "success"
    assert logs[0].result == "Hello from agent"

    assert host.sent == [("telegram:main", "Hello from agent")]
    request, _ = host.calls[0]
    assert request.is_scheduled_task
    assert request.is_main
    assert request.model is None


def test_cron_task_survives_exception(db: DbConnection, host: FakeHost) -> None:
    """Recurring tasks get a next_run even when the agent call blows up."""
    _create(db, "cron-task")
    task = get_task(db, "cron-task")
    assert task is not None
    host.response = RuntimeError("Agent failed")

    asyncio.run(run_task(task, db, host))

    updated = get_task(db, "cron-task")
    assert updated is not None
    assert updated.next_run is not None
    assert updated.status == "active"
    assert updated.last_result == "Error: Agent failed"
    assert host.sent == []

    logs = get_task_run_logs(db, "cron-task")
    assert logs[0].status == "error"
    assert logs[0].error == "Agent failed"


def test_interval_task_survives_error_response(
    db: DbConnection, host: FakeHost
) -> None:
    _create(db, "interval-task", "interval", "60000")
    task = get_task(db, "interval-task")
    assert task is not None
    host.response = AgentResponse(
        status="error", error="Agent timed out", error_kind="timeout"
    )

    asyncio.run(run_task(task, db, host))

    updated = get_task(db, "interval-task")
    assert updated is not None
    assert updated.next_run is not None
    assert updated.last_result == "Error: Agent timed out"
    assert host.sent == []


def test_once_task_is_not_rescheduled(db: DbConnection, host: FakeHost) -> None:
    _create(db, "once-task", "once", "2020-01-01T00:00:00Z")
    task = get_task(db, "once-task")
    assert task is not None

    asyncio.run(run_task(task, db, host))

    updated = get_task(db, "once-task")
    assert updated is not None
    assert updated.next_run is None
    assert updated.last_result == "Hello from agent"


def test_empty_result_records_completed(db: DbConnection, host: FakeHost) -> None:
    _create(db, "quiet")
    task = get_task(db, "quiet")
    assert task is not None
    host.response = AgentResponse(status="success", result=None)

    asyncio.run(run_task(task, db, host))

    updated = get_task(db, "quiet")
    assert updated is not None
    assert updated.last_result == "Completed"
    assert host.sent == []


def test_long_result_summary_is_truncated(db: DbConnection, host: FakeHost) -> None:
    _create(db, "chatty")
    task = get_task(db, "chatty")
    assert task is not None
    host.response = AgentResponse(status="success", result="x" * 500)

    asyncio.run(run_task(task, db, host))

    updated = get_task(db, "chatty")
    assert updated is not None
    assert updated.last_result == "x" * 200
    assert host.sent == [("telegram:main", "x" * 500)]


@pytest.mark.parametrize(
    ("context_mode", "tracked"), [("group", True), ("isolated", False)]
)
def test_context_mode_selects_session_tracking(
    db: DbConnection, host: FakeHost, context_mode: str, tracked: bool
) -> None:
    _create(db, "t", folder="family", context_mode=context_mode)
    task = get_task(db, "t")
    assert task is not None

    asyncio.run(run_task(task, db, host))

    request, track_session = host.calls[0]
    assert track_session is tracked
    assert request.group_folder == "family"
    assert not request.is_main


def test_unregistered_group_is_recorded_as_error(
    db: DbConnection, host: FakeHost
) -> None:
    _create(db, "orphan", folder="gone")
    task = get_task(db, "orphan")
    assert task is not None

    asyncio.run(run_task(task, db, host))

    assert host.calls == []
    logs = get_task_run_logs(db, "orphan")
    assert logs[0].status == "error"
    assert "gone" in (logs[0].error or "")


def test_due_tasks_rechecked_before_running(db: DbConnection, host: FakeHost) -> None:
    _create(db, "a")
    _create(db, "b")

    def pause_all(request: AgentRequest) -> None:
        update_task(db, "a", status="paused")
        update_task(db, "b", status="paused")

    host.on_run = pause_all

    ran = asyncio.run(run_due_tasks(db, host))

    assert ran == 1
    assert len(host.calls) == 1
    logged = [t for t in ("a", "b") if get_task_run_logs(db, t)]
    assert len(logged) == 1


def test_scheduler_loop_stops_when_asked(db: DbConnection, host: FakeHost) -> None:
    _create(db, "a")
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    asyncio.run(
        run_scheduler(
            db,
            host,
            poll_interval=7,
            should_stop=lambda: len(sleeps) >= 2,
            sleep=fake_sleep,
        )
    )

    assert sleeps == [7, 7]
    # Rescheduled into the future after the first pass.
    assert len(host.calls) == 1
