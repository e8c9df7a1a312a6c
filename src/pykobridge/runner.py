"""Sandbox entry point: ``python -m pykobridge.runner``.

Reads one :class:`~pykobridge.contracts.AgentRequest` from stdin, runs the
Claude agent, turns the agent's structured answer into a reply plus queued
IPC commands, and writes an :class:`~pykobridge.contracts.AgentResponse` to
``$PYKOBRIDGE_OUTPUT_PATH``.  Nothing but the marker-bracketed status line
goes to stdout; diagnostics go to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from pykobridge.agent_core import query_agent
from pykobridge.contracts import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    RESPONSE_SCHEMA,
    Action,
    AgentContractError,
    AgentRequest,
    AgentResponse,
    CancelTaskAction,
    PauseTaskAction,
    ResumeTaskAction,
    ScheduleTaskAction,
    SendMessageAction,
    parse_agent_output,
    validate_actions,
)
from pykobridge.ipc import (
    CancelTaskEnvelope,
    IpcQueue,
    MessageEnvelope,
    PauseTaskEnvelope,
    ResumeTaskEnvelope,
    ScheduleTaskEnvelope,
    atomic_write_json,
)
from pykobridge.memory import clamp_text, read_file_tail, redact_sensitive
from pykobridge.scheduling import ScheduleError, validate_schedule

log = logging.getLogger("pykobridge.runner")

MAX_MEMORY_CHARS = 12_000
MAX_JOURNAL_TAIL_CHARS = 6_000


@dataclass
class RunnerPaths:
    output: Path
    ipc_namespace: Path
    workdir: Path
    notes: Path

    @classmethod
    def from_env(cls) -> RunnerPaths:
        return cls(
            output=Path(os.environ["PYKOBRIDGE_OUTPUT_PATH"]),
            ipc_namespace=Path(os.environ["PYKOBRIDGE_IPC_NAMESPACE_DIR"]),
            workdir=Path(os.environ.get("PYKOBRIDGE_WORKDIR", os.getcwd())),
            notes=Path(os.environ.get("PYKOBRIDGE_NOTES_DIR", "notes")),
        )


def build_prompt(request: AgentRequest, paths: RunnerPaths) -> str:
    memory_sections: list[str] = []
    memory_path = paths.workdir / "MEMORY.md"
    if memory_path.is_file():
        memory = memory_path.read_text(encoding="utf-8", errors="ignore")
        memory_sections.append(
            f"## Memory ({memory_path})\n{clamp_text(memory, MAX_MEMORY_CHARS)}"
        )
    journal_path = paths.notes / "journal.md"
    tail = read_file_tail(journal_path, MAX_JOURNAL_TAIL_CHARS)
    if tail and redact_sensitive(tail).strip():
        memory_sections.append(
            f"## Notes Journal Tail ({journal_path})\n{redact_sensitive(tail)}"
        )
    memory_block = (
        "\nMEMORY (authoritative, can be edited):\n"
        + "\n\n".join(memory_sections)
        + "\n"
        if memory_sections
        else ""
    )

    situation = (
        "You are running as a scheduled task, not in direct response to a user. "
        "Use actions to message the user if needed."
        if request.is_scheduled_task
        else "You are responding to a user message."
    )

    return "\n".join(
        [
            "You are a personal chat assistant running inside a sandbox.",
            situation,
            "",
            "Output MUST be a single JSON object matching this schema, "
            "with no text outside it:",
            json.dumps(RESPONSE_SCHEMA),
            "- reply: the message to send back to the chat.",
            "- actions: side effects to request from the host (may be empty).",
            "For normal replies use `reply` and do NOT repeat it with send_message.",
            "",
            "Context:",
            f"- workspaceFolder: {request.group_folder}",
            f"- chatId: {request.chat_id}",
            f"- isMain: {request.is_main}",
            f"- workspace: {paths.workdir} (read/write)",
            f"- notesDir: {paths.notes}",
            f"- tasks snapshot: {paths.ipc_namespace / 'current_tasks.json'}",
            "",
            "Actions:",
            "- send_message: send an extra message to the current chat.",
            "- schedule_task: create a cron/interval/once task. Use local time for "
            '"once" (no Z suffix) and intervals in milliseconds. Set context_mode '
            '"group" to share this conversation or "isolated" for a clean run.',
            "- pause_task / resume_task / cancel_task: manage tasks by task_id.",
            "",
            "Memory rules:",
            '- When the user says "remember this", update MEMORY.md in the workspace.',
            "- Do not expose secrets in replies.",
            memory_block,
            "CONVERSATION:",
            request.prompt,
        ]
    )


def filter_actions(
    actions: list[Action], reply: str, *, is_scheduled_task: bool
) -> list[Action]:
    """Drop ``send_message`` actions that would duplicate the reply.

    A live turn with a non-empty reply sends nothing else; a scheduled run
    only loses messages identical to its reply.
    """
    reply = reply.strip()
    kept: list[Action] = []
    for action in actions:
        if isinstance(action, SendMessageAction) and reply:
            if not is_scheduled_task or action.text.strip() == reply:
                log.info("Suppressed send_message duplicating the reply")
                continue
        kept.append(action)
    return kept


def queue_actions(
    actions: list[Action], request: AgentRequest, queue: IpcQueue, namespace: str
) -> list[str]:
    """Turn validated actions into IPC envelopes.  Returns warnings."""
    warnings: list[str] = []
    for action in actions:
        match action:
            case SendMessageAction():
                queue.enqueue(
                    namespace,
                    MessageEnvelope(
                        type="message", chat_id=request.chat_id, text=action.text
                    ),
                )
            case ScheduleTaskAction():
                try:
                    validate_schedule(action.schedule_type, action.schedule_value)
                except ScheduleError as e:
                    warnings.append(str(e))
                    continue
                queue.enqueue(
                    namespace,
                    ScheduleTaskEnvelope(
                        type="schedule_task",
                        prompt=action.prompt,
                        schedule_type=action.schedule_type,
                        schedule_value=action.schedule_value,
                        context_mode=action.context_mode or "group",
                        chat_id=request.chat_id,
                    ),
                )
            case PauseTaskAction(task_id=task_id):
                queue.enqueue(
                    namespace, PauseTaskEnvelope(type="pause_task", task_id=task_id)
                )
            case ResumeTaskAction(task_id=task_id):
                queue.enqueue(
                    namespace, ResumeTaskEnvelope(type="resume_task", task_id=task_id)
                )
            case CancelTaskAction(task_id=task_id):
                queue.enqueue(
                    namespace, CancelTaskEnvelope(type="cancel_task", task_id=task_id)
                )
    return warnings


async def run(request: AgentRequest, paths: RunnerPaths) -> AgentResponse:
    agent_run = await query_agent(
        build_prompt(request, paths),
        workdir=paths.workdir,
        model=request.model,
        reasoning_effort=request.reasoning_effort,
        resume_session_id=request.session_id,
    )
    output = parse_agent_output(agent_run.text)

    actions, warnings = validate_actions(output.actions)
    actions = filter_actions(
        actions, output.reply, is_scheduled_task=request.is_scheduled_task
    )
    queue = IpcQueue(paths.ipc_namespace.parent)
    warnings += queue_actions(actions, request, queue, paths.ipc_namespace.name)

    reply = output.reply.strip()
    if warnings:
        reply += "\n\nWarnings:\n- " + "\n- ".join(warnings)
    return AgentResponse(
        status="success",
        result=reply.strip() or None,
        new_session_id=agent_run.session_id,
    )


def emit(response: AgentResponse, output_path: Path) -> None:
    atomic_write_json(output_path, response.model_dump(mode="json"))
    status = {"status": response.status, "error": response.error}
    print(OUTPUT_START_MARKER)
    print(json.dumps(status))
    print(OUTPUT_END_MARKER)
    sys.stdout.flush()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="[runner] %(levelname)s %(message)s",
    )
    paths = RunnerPaths.from_env()

    try:
        request = AgentRequest.model_validate_json(sys.stdin.read())
    except ValidationError as e:
        emit(
            AgentResponse(
                status="error",
                error=f"Failed to parse input: {e}",
                error_kind="contract",
            ),
            paths.output,
        )
        sys.exit(1)

    log.info("Received request for workspace %s", request.group_folder)
    try:
        response = asyncio.run(run(request, paths))
    except AgentContractError as e:
        log.error("Agent output rejected: %s", e)
        response = AgentResponse(status="error", error=str(e), error_kind="contract")
    except Exception as e:
        log.exception("Agent error")
        response = AgentResponse(
            status="error", error=str(e) or type(e).__name__, error_kind="runtime"
        )

    emit(response, paths.output)
    if response.status == "error":
        sys.exit(1)


if __name__ == "__main__":
    main()
