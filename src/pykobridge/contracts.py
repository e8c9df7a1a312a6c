"""Agent Invocation Contract types shared by the host and the sandboxed runner.

The host serialises an :class:`AgentRequest` to the runner's stdin; the
runner writes an :class:`AgentResponse` to the output file.  The agent's own
structured answer is an :class:`AgentOutput`, whose ``actions`` are validated
one by one against the closed :data:`Action` union.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, Field, TypeAdapter, ValidationError

from pykobridge.models import ContextMode, ScheduleType

ReasoningEffort = Literal["low", "medium", "high"]
ErrorKind = Literal["timeout", "launch", "output", "contract", "runtime"]

OUTPUT_START_MARKER = "---PYKOBRIDGE_OUTPUT_START---"
OUTPUT_END_MARKER = "---PYKOBRIDGE_OUTPUT_END---"


class AgentContractError(Exception):
    """The agent produced output that does not match the response schema."""


class AgentRequest(BaseModel):
    prompt: str
    session_id: str | None = None
    group_folder: str
    chat_id: str
    is_main: bool = False
    is_scheduled_task: bool = False
    model: str | None = None
    reasoning_effort: ReasoningEffort | None = None


class AgentResponse(BaseModel):
    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def timed_out(self) -> bool:
        return self.error_kind == "timeout"


# --- Actions the agent may request from the host ---


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value.strip()


NonEmptyStr = Annotated[str, AfterValidator(_require_text)]


class SendMessageAction(BaseModel):
    type: Literal["send_message"]
    text: NonEmptyStr


class ScheduleTaskAction(BaseModel):
    type: Literal["schedule_task"]
    prompt: NonEmptyStr
    schedule_type: ScheduleType
    schedule_value: NonEmptyStr
    context_mode: ContextMode | None = None


class PauseTaskAction(BaseModel):
    type: Literal["pause_task"]
    task_id: NonEmptyStr


class ResumeTaskAction(BaseModel):
    type: Literal["resume_task"]
    task_id: NonEmptyStr


class CancelTaskAction(BaseModel):
    type: Literal["cancel_task"]
    task_id: NonEmptyStr


Action = Annotated[
    SendMessageAction
    | ScheduleTaskAction
    | PauseTaskAction
    | ResumeTaskAction
    | CancelTaskAction,
    Field(discriminator="type"),
]

ACTION_TYPES = (
    "send_message",
    "schedule_task",
    "pause_task",
    "resume_task",
    "cancel_task",
)

action_adapter: TypeAdapter[Action] = TypeAdapter(Action)


class AgentOutput(BaseModel):
    """The agent's structured answer.  Actions stay raw until validated."""

    reply: str
    actions: list[Any]


def parse_agent_output(raw: str) -> AgentOutput:
    """Parse the agent's final message.

    Tolerates a surrounding Markdown code fence but nothing else: any text
    that is not a schema-conformant JSON object raises
    :class:`AgentContractError`.
    """
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        return AgentOutput.model_validate_json(text)
    except ValidationError as e:
        raise AgentContractError(f"agent output does not match schema: {e}") from e


def validate_actions(raw_actions: list[Any]) -> tuple[list[Action], list[str]]:
    """Validate each raw action independently.

    Returns the valid actions and one warning per rejected action; a bad
    action never invalidates its siblings.
    """
    valid: list[Action] = []
    warnings: list[str] = []
    for raw in raw_actions:
        if not isinstance(raw, dict) or "type" not in raw:
            warnings.append("Ignored invalid action (missing type).")
            continue
        try:
            valid.append(action_adapter.validate_python(raw))
        except ValidationError as e:
            kind = raw.get("type")
            if kind not in ACTION_TYPES:
                warnings.append(f"Unknown action type: {kind}")
            else:
                fields = ", ".join(
                    ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0])
                    for err in e.errors()
                )
                warnings.append(f"{kind} missing or invalid fields: {fields}")
    return valid, warnings


RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reply": {"type": "string"},
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {
                        "type": "string",
                        "enum": list(ACTION_TYPES),
                    },
                    "text": {"type": ["string", "null"]},
                    "prompt": {"type": ["string", "null"]},
                    "schedule_type": {
                        "type": ["string", "null"],
                        "enum": ["cron", "interval", "once", None],
                    },
                    "schedule_value": {"type": ["string", "null"]},
                    "context_mode": {
                        "type": ["string", "null"],
                        "enum": ["group", "isolated", None],
                    },
                    "task_id": {"type": ["string", "null"]},
                },
                "required": ["type"],
            },
        },
    },
    "required": ["reply", "actions"],
}
