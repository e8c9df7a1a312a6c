import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol

from pykobridge.contracts import AgentRequest, AgentResponse
from pykobridge.db import (
    DbConnection,
    get_due_tasks,
    get_task,
    log_task_run,
    update_task_after_run,
)
from pykobridge.models import RegisteredGroup, ScheduledTask
from pykobridge.scheduling import compute_next_run_after_execution

log = logging.getLogger(__name__)

RESULT_SUMMARY_CHARS = 200


class TaskHost(Protocol):
    """What the scheduler needs from the orchestrator."""

    main_folder: str
    timezone: str

    def group_for_folder(self, folder: str) -> RegisteredGroup | None: ...

    async def run_agent(
        self,
        request: AgentRequest,
        *,
        track_session: bool,
        sandbox_config: dict | None = None,
    ) -> AgentResponse: ...

    async def send_message(self, chat_id: str, text: str) -> str | None: ...


def _next_run(task: ScheduledTask, tz: str) -> str | None:
    try:
        return compute_next_run_after_execution(
            task.schedule_type, task.schedule_value, tz=tz
        )
    except ValueError:
        log.exception("Task %s has an unusable schedule; not rescheduling", task.id)
        return None


async def run_task(task: ScheduledTask, db: DbConnection, host: TaskHost) -> None:
    """Execute one due task and record the attempt, whatever its outcome."""
    start_time = datetime.now(timezone.utc)
    log.info("Running scheduled task %s for %s", task.id, task.group_folder)

    result_text: str | None = None
    error_msg: str | None = None

    group = host.group_for_folder(task.group_folder)
    try:
        if group is None:
            raise LookupError(f"group {task.group_folder!r} is not registered")

        # No model here: the host picks one from the chat's preferences.
        response = await host.run_agent(
            AgentRequest(
                prompt=task.prompt,
                group_folder=task.group_folder,
                chat_id=task.chat_id,
                is_main=task.group_folder == host.main_folder,
                is_scheduled_task=True,
            ),
            track_session=task.context_mode == "group",
            sandbox_config=group.sandbox_config,
        )
        if response.status == "error":
            error_msg = response.error or "Unknown error"
        else:
            result_text = response.result
    except Exception as e:
        error_msg = str(e) or type(e).__name__
        log.exception("Task %s failed", task.id)

    duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
    log.info(
        "Task %s finished in %dms (%s)",
        task.id,
        duration_ms,
        "error" if error_msg else "success",
    )

    log_task_run(
        db,
        task_id=task.id,
        run_at=start_time.isoformat(),
        duration_ms=duration_ms,
        status="error" if error_msg else "success",
        result=result_text,
        error=error_msg,
    )

    if error_msg:
        result_summary = f"Error: {error_msg}"
    else:
        result_summary = (
            result_text[:RESULT_SUMMARY_CHARS] if result_text else "Completed"
        )
    update_task_after_run(
        db,
        task_id=task.id,
        next_run=_next_run(task, host.timezone),
        last_result=result_summary,
    )

    if result_text and not error_msg:
        try:
            await host.send_message(task.chat_id, result_text)
        except Exception:
            log.exception("Failed to deliver result of task %s", task.id)


async def run_due_tasks(db: DbConnection, host: TaskHost) -> int:
    """Run every due task once.  Returns how many actually ran."""
    due_tasks = get_due_tasks(db)
    if due_tasks:
        log.info("Found %d due task(s)", len(due_tasks))

    ran = 0
    for task in due_tasks:
        # A pause or cancel may have landed since the batch was selected.
        current = get_task(db, task.id)
        if current is None or current.status != "active":
            log.info("Skipping task %s: no longer active", task.id)
            continue
        await run_task(current, db, host)
        ran += 1
    return ran


async def run_scheduler(
    db: DbConnection,
    host: TaskHost,
    *,
    poll_interval: float,
    should_stop: Callable[[], bool] = lambda: False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    log.info("Scheduler loop started")
    while not should_stop():
        try:
            await run_due_tasks(db, host)
        except Exception:
            log.exception("Error in scheduler loop")
        await sleep(poll_interval)
