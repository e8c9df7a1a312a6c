"""Directory-backed command queue from sandboxed agents back to the host.

Layout under ``settings.ipc_dir``::

    <folder>/messages/<ts>-<rand>.json   outbound chat messages
    <folder>/tasks/<ts>-<rand>.json      task and tenant management
    <folder>/current_tasks.json          snapshot read by the agent
    errors/<folder>-<kind>-<file>.json   quarantined envelopes

The directory a file is found in is the only trusted statement of which
tenant wrote it.  Identity hints inside the payload are re-checked against
the tenant registry.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter

from pykobridge.db import (
    DbConnection,
    create_task,
    delete_task,
    get_all_registered_groups,
    get_registered_group,
    get_task,
    set_registered_group,
    update_task,
)
from pykobridge.models import (
    Chat,
    ContextMode,
    RegisteredGroup,
    ScheduledTask,
    ScheduleType,
)
from pykobridge.scheduling import ScheduleError, compute_next_run, new_task_id

log = logging.getLogger(__name__)

MESSAGES = "messages"
TASKS = "tasks"
QUEUE_KINDS = (MESSAGES, TASKS)
ERRORS_DIR = "errors"

_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class IpcValidationError(ValueError):
    """An envelope parsed but its content cannot be applied."""


class IpcAuthorizationError(PermissionError):
    """A tenant tried to act on another tenant's resources."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chat_id_field() -> Any:
    return Field(
        default=None, validation_alias=AliasChoices("chat_id", "chatId", "chatJid")
    )


def _task_id_field() -> Any:
    return Field(validation_alias=AliasChoices("task_id", "taskId"))


class MessageEnvelope(BaseModel):
    type: Literal["message"]
    chat_id: str | None = _chat_id_field()
    text: str
    timestamp: str = Field(default_factory=_now)


class ScheduleTaskEnvelope(BaseModel):
    type: Literal["schedule_task"]
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    chat_id: str | None = _chat_id_field()
    timestamp: str = Field(default_factory=_now)


class PauseTaskEnvelope(BaseModel):
    type: Literal["pause_task"]
    task_id: str = _task_id_field()
    timestamp: str = Field(default_factory=_now)


class ResumeTaskEnvelope(BaseModel):
    type: Literal["resume_task"]
    task_id: str = _task_id_field()
    timestamp: str = Field(default_factory=_now)


class CancelTaskEnvelope(BaseModel):
    type: Literal["cancel_task"]
    task_id: str = _task_id_field()
    timestamp: str = Field(default_factory=_now)


class RegisterGroupEnvelope(BaseModel):
    type: Literal["register_group"]
    chat_id: str = Field(validation_alias=AliasChoices("chat_id", "chatId", "jid"))
    name: str
    folder: str
    trigger: str
    requires_trigger: bool = True
    sandbox_config: dict[str, Any] | None = None
    timestamp: str = Field(default_factory=_now)


class RefreshGroupsEnvelope(BaseModel):
    type: Literal["refresh_groups"]
    timestamp: str = Field(default_factory=_now)


Envelope = Annotated[
    MessageEnvelope
    | ScheduleTaskEnvelope
    | PauseTaskEnvelope
    | ResumeTaskEnvelope
    | CancelTaskEnvelope
    | RegisterGroupEnvelope
    | RefreshGroupsEnvelope,
    Field(discriminator="type"),
]

envelope_adapter: TypeAdapter[Envelope] = TypeAdapter(Envelope)

EnvelopeHandler = Callable[[str, Envelope], Awaitable[None]]


def atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as JSON so readers only ever see the complete file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


class IpcQueue:
    def __init__(self, ipc_dir: Path) -> None:
        self.ipc_dir = ipc_dir

    @property
    def errors_dir(self) -> Path:
        return self.ipc_dir / ERRORS_DIR

    def namespace_dir(self, namespace: str) -> Path:
        if not namespace or "/" in namespace or namespace in (".", "..", ERRORS_DIR):
            raise ValueError(f"Invalid IPC namespace: {namespace!r}")
        return self.ipc_dir / namespace

    def ensure_namespace(self, namespace: str) -> Path:
        ns_dir = self.namespace_dir(namespace)
        for kind in QUEUE_KINDS:
            (ns_dir / kind).mkdir(parents=True, exist_ok=True)
        return ns_dir

    def namespaces(self) -> list[str]:
        if not self.ipc_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self.ipc_dir.iterdir()
            if p.is_dir() and p.name != ERRORS_DIR
        )

    def enqueue(self, namespace: str, envelope: BaseModel | dict[str, Any]) -> Path:
        """Atomically add *envelope* to *namespace*'s queue.

        ``message`` envelopes go to ``messages/``, everything else to
        ``tasks/``.  The filename combines a nanosecond timestamp with a
        random suffix so concurrent writers never collide.
        """
        data = (
            envelope.model_dump(mode="json")
            if isinstance(envelope, BaseModel)
            else dict(envelope)
        )
        data.setdefault("timestamp", _now())
        kind = MESSAGES if data.get("type") == "message" else TASKS
        queue_dir = self.namespace_dir(namespace) / kind
        path = queue_dir / f"{time.time_ns()}-{secrets.token_hex(4)}.json"
        atomic_write_json(path, data)
        return path

    def _quarantine(self, namespace: str, kind: str, path: Path) -> None:
        self.errors_dir.mkdir(parents=True, exist_ok=True)
        target = self.errors_dir / f"{namespace}-{kind}-{path.name}"
        try:
            os.replace(path, target)
        except OSError:
            log.exception("Failed to quarantine IPC file %s", path)

    async def drain(self, namespace: str, handler: EnvelopeHandler) -> list[Envelope]:
        """Process every completed envelope in *namespace*.

        Each file is handled independently: success or an authorization
        rejection removes it; a parse or handling failure moves it to the
        quarantine directory.  A directory listing failure ends this drain
        early and is retried on the next poll.
        """
        handled: list[Envelope] = []
        ns_dir = self.namespace_dir(namespace)
        for kind in QUEUE_KINDS:
            queue_dir = ns_dir / kind
            if not queue_dir.is_dir():
                continue
            try:
                files = sorted(queue_dir.glob("*.json"))
            except OSError:
                log.exception("Error reading IPC directory %s", queue_dir)
                return handled

            for path in files:
                try:
                    envelope = envelope_adapter.validate_json(path.read_bytes())
                    await handler(namespace, envelope)
                except IpcAuthorizationError as e:
                    log.warning("Unauthorized IPC command from %s: %s", namespace, e)
                    path.unlink(missing_ok=True)
                except Exception:
                    log.exception("Error processing IPC file %s; quarantining", path)
                    self._quarantine(namespace, kind, path)
                else:
                    path.unlink(missing_ok=True)
                    handled.append(envelope)
        return handled


def write_tasks_snapshot(
    queue: IpcQueue, folder: str, is_main: bool, tasks: Sequence[ScheduledTask]
) -> None:
    """Expose the tenant's tasks (all tasks for main) to the agent."""
    visible = [t for t in tasks if is_main or t.group_folder == folder]
    atomic_write_json(
        queue.namespace_dir(folder) / "current_tasks.json",
        [
            t.model_dump(
                include={
                    "id",
                    "group_folder",
                    "chat_id",
                    "prompt",
                    "schedule_type",
                    "schedule_value",
                    "status",
                    "next_run",
                }
            )
            for t in visible
        ],
    )


def write_groups_snapshot(
    queue: IpcQueue,
    folder: str,
    chats: Sequence[Chat],
    registered: Sequence[RegisteredGroup],
) -> None:
    """List known chats for the main tenant so it can register new ones."""
    folders = {g.chat_id: g.folder for g in registered}
    atomic_write_json(
        queue.namespace_dir(folder) / "available_groups.json",
        {
            "groups": [
                {
                    "chat_id": c.chat_id,
                    "name": c.name,
                    "last_activity": c.last_message_time,
                    "folder": folders.get(c.chat_id),
                }
                for c in chats
            ],
            "last_sync": _now(),
        },
    )


class IpcHandler:
    """Apply drained envelopes with namespace-based authorization.

    *send_message* delivers chat text (duplicate suppression is its
    concern); *on_groups_changed* lets the owner refresh its registry after
    ``register_group`` or ``refresh_groups``.
    """

    def __init__(
        self,
        db: DbConnection,
        *,
        main_folder: str,
        timezone: str,
        send_message: Callable[[str, str], Awaitable[Any]],
        on_groups_changed: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.db = db
        self.main_folder = main_folder
        self.timezone = timezone
        self.send_message = send_message
        self.on_groups_changed = on_groups_changed

    def _own_group(self, namespace: str) -> RegisteredGroup | None:
        for group in get_all_registered_groups(self.db):
            if group.folder == namespace:
                return group
        return None

    def _resolve_target(self, namespace: str, chat_id: str | None) -> RegisteredGroup:
        is_main = namespace == self.main_folder
        if chat_id is None:
            group = self._own_group(namespace)
            if group is None:
                raise IpcValidationError(
                    f"No registered chat for namespace {namespace!r}"
                )
            return group
        group = get_registered_group(self.db, chat_id)
        if group is None:
            if is_main:
                raise IpcValidationError(f"Unknown target chat {chat_id!r}")
            raise IpcAuthorizationError(f"target chat {chat_id!r} is not registered")
        if not is_main and group.folder != namespace:
            raise IpcAuthorizationError(
                f"{namespace!r} may not target chat {chat_id!r}"
            )
        return group

    def _owned_task(self, namespace: str, task_id: str) -> ScheduledTask | None:
        task = get_task(self.db, task_id)
        if task is None:
            log.warning("IPC command from %s for unknown task %s", namespace, task_id)
            return None
        if namespace != self.main_folder and task.group_folder != namespace:
            raise IpcAuthorizationError(
                f"{namespace!r} may not modify task {task_id} "
                f"owned by {task.group_folder!r}"
            )
        return task

    def _require_main(self, namespace: str, action: str) -> None:
        if namespace != self.main_folder:
            raise IpcAuthorizationError(f"{namespace!r} may not {action}")

    async def __call__(self, namespace: str, envelope: Envelope) -> None:
        match envelope:
            case MessageEnvelope():
                target = self._resolve_target(namespace, envelope.chat_id)
                text = envelope.text.strip()
                if text:
                    await self.send_message(target.chat_id, text)
                    log.info(
                        "IPC message from %s sent to %s", namespace, target.chat_id
                    )

            case ScheduleTaskEnvelope():
                target = self._resolve_target(namespace, envelope.chat_id)
                try:
                    next_run = compute_next_run(
                        envelope.schedule_type,
                        envelope.schedule_value,
                        tz=self.timezone,
                    )
                except ScheduleError as e:
                    raise IpcValidationError(str(e)) from e
                task_id = new_task_id()
                create_task(
                    self.db,
                    task_id=task_id,
                    group_folder=target.folder,
                    chat_id=target.chat_id,
                    prompt=envelope.prompt,
                    schedule_type=envelope.schedule_type,
                    schedule_value=envelope.schedule_value,
                    next_run=next_run,
                    context_mode=envelope.context_mode,
                )
                log.info(
                    "Task %s created via IPC by %s (%s, next run %s)",
                    task_id,
                    namespace,
                    envelope.context_mode,
                    next_run,
                )

            case PauseTaskEnvelope():
                if self._owned_task(namespace, envelope.task_id):
                    update_task(self.db, envelope.task_id, status="paused")
                    log.info("Task %s paused via IPC", envelope.task_id)

            case ResumeTaskEnvelope():
                task = self._owned_task(namespace, envelope.task_id)
                if task:
                    updates: dict[str, object] = {"status": "active"}
                    if task.schedule_type != "once":
                        updates["next_run"] = compute_next_run(
                            task.schedule_type, task.schedule_value, tz=self.timezone
                        )
                    update_task(self.db, envelope.task_id, **updates)
                    log.info("Task %s resumed via IPC", envelope.task_id)

            case CancelTaskEnvelope():
                if self._owned_task(namespace, envelope.task_id):
                    delete_task(self.db, envelope.task_id)
                    log.info("Task %s cancelled via IPC", envelope.task_id)

            case RegisterGroupEnvelope():
                self._require_main(namespace, "register groups")
                folder = envelope.folder
                if not _FOLDER_RE.match(folder) or folder == ERRORS_DIR:
                    raise IpcValidationError(f"Invalid group folder {folder!r}")
                set_registered_group(
                    self.db,
                    RegisteredGroup(
                        chat_id=envelope.chat_id,
                        name=envelope.name,
                        folder=envelope.folder,
                        trigger=envelope.trigger,
                        requires_trigger=envelope.requires_trigger,
                        sandbox_config=envelope.sandbox_config,
                        added_at=_now(),
                    ),
                )
                log.info("Group %s registered as %s", envelope.chat_id, envelope.folder)
                if self.on_groups_changed:
                    await self.on_groups_changed()

            case RefreshGroupsEnvelope():
                self._require_main(namespace, "refresh groups")
                if self.on_groups_changed:
                    await self.on_groups_changed()
                log.info("Group metadata refresh requested by %s", namespace)
