from typing import Any, Literal

from pydantic import BaseModel

ScheduleType = Literal["cron", "interval", "once"]
ContextMode = Literal["group", "isolated"]
TaskStatus = Literal["active", "paused"]


class ChatMessage(BaseModel):
    id: str
    chat_id: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool = False


class Chat(BaseModel):
    chat_id: str
    name: str | None = None
    last_message_time: str | None = None


class RegisteredGroup(BaseModel):
    chat_id: str
    name: str
    folder: str
    trigger: str
    requires_trigger: bool = True
    sandbox_config: dict[str, Any] | None = None
    added_at: str


class Session(BaseModel):
    folder: str
    session_id: str | None = None
    updated_at: str


class ScheduledTask(BaseModel):
    id: str
    group_folder: str
    chat_id: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: TaskStatus = "active"
    created_at: str


class TaskRunLog(BaseModel):
    id: int
    task_id: str
    run_at: str
    duration_ms: int
    status: str
    result: str | None = None
    error: str | None = None
