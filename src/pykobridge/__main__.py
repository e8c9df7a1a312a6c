import asyncio
import logging
from datetime import datetime, timezone

import click

from pykobridge.config import settings
from pykobridge.db import (
    DbConnection,
    create_task,
    delete_session,
    delete_task,
    get_all_registered_groups,
    get_all_sessions,
    get_all_tasks,
    get_session,
    get_task,
    get_task_run_logs,
    get_tasks_for_group,
    init_db,
    set_registered_group,
    update_task,
)
from pykobridge.gateway import ChatGateway, ConsoleGateway, TelegramGateway
from pykobridge.models import RegisteredGroup, ScheduledTask
from pykobridge.orchestrator import InstanceLockError, Orchestrator
from pykobridge.scheduling import ScheduleError, compute_next_run, new_task_id


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


def _require_task(db: DbConnection, task_id: str) -> ScheduledTask:
    task = get_task(db, task_id)
    if task is None:
        raise click.ClickException(f"No task {task_id}")
    return task


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """pykobridge: chat bridge to a sandboxed Claude agent"""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "telegram"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
def run() -> None:
    """Run the bridge: message loop, task scheduler and IPC watcher."""
    db = _get_db()
    gateway: ChatGateway
    if settings.telegram_bot_token:
        gateway = TelegramGateway(
            db,
            token=settings.telegram_bot_token,
            owner_id=settings.telegram_owner_id,
            assistant_name=settings.assistant_name,
        )
    else:
        gateway = ConsoleGateway(db, assistant_name=settings.assistant_name)
    try:
        asyncio.run(Orchestrator(settings, db, gateway).run())
    except InstanceLockError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.option("--group", "folder", help="Only tasks owned by this tenant folder.")
def tasks(folder: str | None) -> None:
    """List scheduled tasks and their status."""
    db = _get_db()
    all_tasks = get_tasks_for_group(db, folder) if folder else get_all_tasks(db)
    if not all_tasks:
        click.echo("No scheduled tasks.")
        return
    click.echo(
        f"{'ID':<28} {'Group':<12} {'Prompt':<40} {'Status':<8} {'Next Run'}"
    )
    click.echo("-" * 120)
    for task in all_tasks:
        click.echo(
            f"{task.id:<28} {task.group_folder:<12} {task.prompt[:40]:<40}"
            f" {task.status:<8} {task.next_run or '-'}"
        )


@main.command()
@click.option(
    "--clear", "clear_folder", metavar="FOLDER", help="Forget the session of FOLDER."
)
def sessions(clear_folder: str | None) -> None:
    """Show the stored session per tenant.

    With --clear, the tenant's next live turn starts a fresh conversation.
    """
    db = _get_db()
    if clear_folder:
        if get_session(db, clear_folder) is None:
            raise click.ClickException(f"No session for {clear_folder}")
        delete_session(db, clear_folder)
        click.echo(f"Cleared session for {clear_folder}")
        return
    for session in get_all_sessions(db):
        click.echo(f"{session.folder} | {session.session_id} | {session.updated_at}")


@main.command()
def groups() -> None:
    """List registered tenants."""
    db = _get_db()
    for group in get_all_registered_groups(db):
        trigger = group.trigger if group.requires_trigger else "(always)"
        click.echo(f"{group.folder:<16} {group.chat_id:<28} {trigger:<12} {group.name}")


@main.command("register-group")
@click.argument("chat_id")
@click.argument("folder")
@click.option("--name", help="Display name (defaults to the folder).")
@click.option("--trigger", help="Wake trigger (defaults to @<assistant name>).")
@click.option("--no-trigger", is_flag=True, help="Answer every message.")
def register_group(
    chat_id: str, folder: str, name: str | None, trigger: str | None, no_trigger: bool
) -> None:
    """Register CHAT_ID as a tenant working in FOLDER."""
    db = _get_db()
    set_registered_group(
        db,
        RegisteredGroup(
            chat_id=chat_id,
            name=name or folder,
            folder=folder,
            trigger=trigger or f"@{settings.assistant_name}",
            requires_trigger=not no_trigger,
            added_at=datetime.now(timezone.utc).isoformat(),
        ),
    )
    click.echo(f"Registered {chat_id} as {folder}")


@main.command()
@click.argument("folder")
@click.argument("schedule_type", type=click.Choice(["cron", "interval", "once"]))
@click.argument("schedule_value")
@click.argument("prompt")
@click.option(
    "--context-mode",
    type=click.Choice(["group", "isolated"]),
    default="isolated",
    show_default=True,
)
def schedule(
    folder: str,
    schedule_type: str,
    schedule_value: str,
    prompt: str,
    context_mode: str,
) -> None:
    """Schedule PROMPT for the tenant in FOLDER."""
    db = _get_db()
    group = next(
        (g for g in get_all_registered_groups(db) if g.folder == folder), None
    )
    if group is None:
        raise click.ClickException(f"No registered tenant with folder {folder!r}")
    try:
        next_run = compute_next_run(schedule_type, schedule_value, tz=settings.timezone)
    except ScheduleError as e:
        raise click.ClickException(str(e)) from e

    task_id = new_task_id()
    create_task(
        db,
        task_id=task_id,
        group_folder=folder,
        chat_id=group.chat_id,
        prompt=prompt,
        schedule_type=schedule_type,
        schedule_value=schedule_value,
        next_run=next_run,
        context_mode=context_mode,
    )
    click.echo(f"Task {task_id} scheduled. Next run: {next_run}")


@main.command()
@click.argument("task_id")
def pause(task_id: str) -> None:
    """Pause a scheduled task."""
    db = _get_db()
    _require_task(db, task_id)
    update_task(db, task_id, status="paused")
    click.echo(f"Task {task_id} paused.")


@main.command()
@click.argument("task_id")
def resume(task_id: str) -> None:
    """Resume a paused task."""
    db = _get_db()
    task = _require_task(db, task_id)
    updates: dict[str, object] = {"status": "active"}
    if task.schedule_type != "once":
        updates["next_run"] = compute_next_run(
            task.schedule_type, task.schedule_value, tz=settings.timezone
        )
    update_task(db, task_id, **updates)
    click.echo(f"Task {task_id} resumed.")


@main.command()
@click.argument("task_id")
def cancel(task_id: str) -> None:
    """Delete a scheduled task and its run history."""
    db = _get_db()
    _require_task(db, task_id)
    delete_task(db, task_id)
    click.echo(f"Task {task_id} cancelled.")


@main.command()
@click.argument("task_id")
def runs(task_id: str) -> None:
    """Show the run history of a task."""
    db = _get_db()
    logs = get_task_run_logs(db, task_id)
    if not logs:
        click.echo("No runs recorded.")
        return
    for entry in logs:
        outcome = entry.result if entry.status == "success" else entry.error
        click.echo(
            f"{entry.run_at} {entry.status:<8} {entry.duration_ms:>7}ms "
            f"{(outcome or '')[:80]}"
        )


if __name__ == "__main__":
    main()
