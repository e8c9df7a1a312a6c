import pytest

from pykobridge.contracts import (
    AgentContractError,
    AgentResponse,
    PauseTaskAction,
    ScheduleTaskAction,
    SendMessageAction,
    parse_agent_output,
    validate_actions,
)


def test_parse_plain_json() -> None:
    output = parse_agent_output('{"reply": "hi", "actions": []}')
    assert output.reply == "hi"
    assert output.actions == []


def test_parse_tolerates_code_fence() -> None:
    raw = '```json\n{"reply": "hi", "actions": [{"type": "pause_task"}]}\n```'
    output = parse_agent_output(raw)
    assert output.reply == "hi"
    assert output.actions == [{"type": "pause_task"}]


@pytest.mark.parametrize(
    "raw",
    [
        "Sure! Here you go.",
        '{"reply": "hi"}',
        '{"reply": "hi", "actions": []} trailing',
        "",
    ],
)
def test_parse_rejects_non_conforming_output(raw: str) -> None:
    with pytest.raises(AgentContractError):
        parse_agent_output(raw)


def test_validate_actions_keeps_good_siblings() -> None:
    actions, warnings = validate_actions(
        [
            {"type": "send_message", "text": " hello "},
            {"type": "schedule_task", "prompt": "p", "schedule_type": "cron"},
            {"type": "launch_rocket"},
            {"text": "no type"},
            "not an object",
            {"type": "pause_task", "task_id": "task-1"},
        ]
    )

    assert actions == [
        SendMessageAction(type="send_message", text="hello"),
        PauseTaskAction(type="pause_task", task_id="task-1"),
    ]
    assert warnings == [
        "schedule_task missing or invalid fields: schedule_value",
        "Unknown action type: launch_rocket",
        "Ignored invalid action (missing type).",
        "Ignored invalid action (missing type).",
    ]


def test_validate_actions_rejects_blank_text() -> None:
    actions, warnings = validate_actions([{"type": "send_message", "text": "   "}])
    assert actions == []
    assert warnings == ["send_message missing or invalid fields: text"]


def test_null_optional_fields_are_accepted() -> None:
    actions, warnings = validate_actions(
        [
            {
                "type": "schedule_task",
                "prompt": "water plants",
                "schedule_type": "interval",
                "schedule_value": "3600000",
                "context_mode": None,
                "text": None,
            }
        ]
    )
    assert warnings == []
    (action,) = actions
    assert isinstance(action, ScheduleTaskAction)
    assert action.context_mode is None


def test_timed_out_property() -> None:
    assert AgentResponse(status="error", error_kind="timeout").timed_out
    assert not AgentResponse(status="error", error_kind="runtime").timed_out
    assert not AgentResponse(status="success", result="ok").timed_out
