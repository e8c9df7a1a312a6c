import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from pykobridge.config import Settings
from pykobridge.contracts import AgentRequest, AgentResponse
from pykobridge.db import (
    DbConnection,
    get_router_state,
    init_db,
    store_message,
)
from pykobridge.dispatch import (
    WATERMARK_ID_KEY,
    WATERMARK_KEY,
    build_prompt,
    process_new_messages,
    run_message_loop,
    strip_trigger,
)
from pykobridge.models import ChatMessage, RegisteredGroup
from pykobridge.routing import ModelPreferences
from pykobridge.sandbox import TIMEOUT_NOTICE

MAIN_CHAT = "telegram:1"
FAMILY_CHAT = "telegram:-100"


@dataclass
class FakeGateway:
    typing: list[tuple[str, bool]] = field(default_factory=list)

    async def set_typing(self, chat_id: str, on: bool) -> None:
        self.typing.append((chat_id, on))


@dataclass
class FakeHost:
    settings: Settings
    prefs: ModelPreferences
    gateway: FakeGateway = field(default_factory=FakeGateway)
    responses: list[AgentResponse | Exception] = field(default_factory=list)
    calls: list[tuple[AgentRequest, bool]] = field(default_factory=list)
    sent: list[tuple[str, str]] = field(default_factory=list)
    _groups: dict[str, RegisteredGroup] = field(default_factory=dict)

    @property
    def groups(self) -> dict[str, RegisteredGroup]:
        return self._groups

    async def run_agent(
        self,
        request: AgentRequest,
        *,
        track_session: bool,
        sandbox_config: dict | None = None,
    ) -> AgentResponse:
        self.calls.append((request, track_session))
        response = (
            self.responses.pop(0)
            if self.responses
            else AgentResponse(status="success", result="ok")
        )
        if isinstance(response, Exception):
            raise response
        return response

    async def send_message(self, chat_id: str, text: str) -> str | None:
        self.sent.append((chat_id, text))
        return "2024-01-01T12:00:00+00:00"


def _group(
    chat_id: str, folder: str, requires_trigger: bool = True
) -> RegisteredGroup:
    return RegisteredGroup(
        chat_id=chat_id,
        name=folder,
        folder=folder,
        trigger="@Andy",
        requires_trigger=requires_trigger,
        added_at="2024-01-01T00:00:00+00:00",
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data=tmp_path / "data", recent_messages=3)


@pytest.fixture
def db(tmp_path: Path) -> DbConnection:
    return init_db(tmp_path / "test.db")


@pytest.fixture
def host(settings: Settings, tmp_path: Path) -> FakeHost:
    return FakeHost(
        settings=settings,
        prefs=ModelPreferences(tmp_path / "prefs.json"),
        _groups={
            MAIN_CHAT: _group(MAIN_CHAT, "main", requires_trigger=False),
            FAMILY_CHAT: _group(FAMILY_CHAT, "family"),
        },
    )


def _store(
    db: DbConnection, msg_id: str, content: str, second: int, chat_id: str = MAIN_CHAT
) -> ChatMessage:
    msg = ChatMessage(
        id=msg_id,
        chat_id=chat_id,
        sender="1",
        sender_name="Alice",
        content=content,
        timestamp=f"2024-01-01T00:00:{second:02d}+00:00",
    )
    store_message(db, msg)
    return msg


class TestStripTrigger:
    def test_trigger_is_removed(self, settings: Settings) -> None:
        group = _group(FAMILY_CHAT, "family")
        query = strip_trigger("@Andy, what time is it?", group, settings, is_main=False)
        assert query == "what time is it?"
        assert strip_trigger("@andy: hi", group, settings, is_main=False) == "hi"

    def test_untriggered_message_is_ignored(self, settings: Settings) -> None:
        group = _group(FAMILY_CHAT, "family")
        assert strip_trigger("hello @Andy", group, settings, is_main=False) is None
        assert strip_trigger("@Andrew hi", group, settings, is_main=False) is None

    def test_custom_trigger(self, settings: Settings) -> None:
        group = _group(FAMILY_CHAT, "family")
        group = group.model_copy(update={"trigger": "hey bot"})
        assert strip_trigger("Hey bot do it", group, settings, is_main=False) == "do it"
        assert strip_trigger("@Andy do it", group, settings, is_main=False) == "do it"

    def test_main_and_untriggered_groups_answer_everything(
        self, settings: Settings
    ) -> None:
        group = _group(MAIN_CHAT, "main", requires_trigger=False)
        assert strip_trigger(" hi ", group, settings, is_main=True) == "hi"
        family = _group(FAMILY_CHAT, "family", requires_trigger=False)
        assert strip_trigger("hi", family, settings, is_main=False) == "hi"


class TestProcessNewMessages:
    def test_replies_and_advances_watermark(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "what's for dinner?", 1)

        done = asyncio.run(process_new_messages(db, host))

        assert done == 1
        assert host.sent == [(MAIN_CHAT, "ok")]
        assert get_router_state(db, WATERMARK_KEY) == "2024-01-01T00:00:01+00:00"
        request, tracked = host.calls[0]
        assert tracked
        assert request.is_main
        assert request.model is not None
        assert "what's for dinner?" in request.prompt
        assert host.gateway.typing == [(MAIN_CHAT, True), (MAIN_CHAT, False)]

    def test_failure_holds_watermark_at_previous_message(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "first", 1)
        _store(db, "2", "second", 2)
        _store(db, "3", "third", 3)
        host.responses = [
            AgentResponse(status="success", result="one"),
            RuntimeError("sandbox unavailable"),
        ]

        done = asyncio.run(process_new_messages(db, host))

        assert done == 1
        assert get_router_state(db, WATERMARK_KEY) == "2024-01-01T00:00:01+00:00"
        assert host.gateway.typing[-1] == (MAIN_CHAT, False)

        done = asyncio.run(process_new_messages(db, host))

        assert done == 2
        assert get_router_state(db, WATERMARK_KEY) == "2024-01-01T00:00:03+00:00"
        assert len(host.calls) == 4
        assert [text for _, text in host.sent] == ["one", "ok", "ok"]

    def test_failure_within_same_second_is_reoffered(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "first", 5)
        _store(db, "2", "second", 5)
        host.responses = [
            AgentResponse(status="success", result="one"),
            RuntimeError("sandbox unavailable"),
        ]

        assert asyncio.run(process_new_messages(db, host)) == 1
        assert get_router_state(db, WATERMARK_KEY) == "2024-01-01T00:00:05+00:00"
        assert get_router_state(db, WATERMARK_ID_KEY) == "1"

        assert asyncio.run(process_new_messages(db, host)) == 1

        assert len(host.calls) == 3
        assert [text for _, text in host.sent] == ["one", "ok"]
        assert get_router_state(db, WATERMARK_ID_KEY) == "2"

    def test_send_failure_is_retried(self, db: DbConnection, host: FakeHost) -> None:
        _store(db, "1", "hello", 1)

        async def broken_send(chat_id: str, text: str) -> str | None:
            raise ConnectionError("telegram down")

        host.send_message = broken_send  # type: ignore[method-assign]

        done = asyncio.run(process_new_messages(db, host))

        assert done == 0
        assert get_router_state(db, WATERMARK_KEY) is None

    def test_group_needs_trigger(self, db: DbConnection, host: FakeHost) -> None:
        _store(db, "1", "just chatting", 1, chat_id=FAMILY_CHAT)
        _store(db, "2", "@Andy summarize please", 2, chat_id=FAMILY_CHAT)

        done = asyncio.run(process_new_messages(db, host))

        assert done == 2
        assert len(host.calls) == 1
        request, _ = host.calls[0]
        assert request.group_folder == "family"
        assert not request.is_main
        # Earlier untriggered chatter is still context.
        assert "just chatting" in request.prompt

    def test_unregistered_chats_are_not_read(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "hi", 1, chat_id="telegram:999")

        assert asyncio.run(process_new_messages(db, host)) == 0
        assert host.calls == []

    def test_model_command_skips_agent(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "model chat", 1)

        asyncio.run(process_new_messages(db, host))

        assert host.calls == []
        assert host.sent == [(MAIN_CHAT, "Model mode set to chat.")]
        pref = host.prefs.get(MAIN_CHAT)
        assert pref is not None and pref.mode == "chat"

    def test_timeout_sends_notice(self, db: DbConnection, host: FakeHost) -> None:
        _store(db, "1", "long job", 1)
        host.responses = [
            AgentResponse(status="error", error="timed out", error_kind="timeout")
        ]

        done = asyncio.run(process_new_messages(db, host))

        assert done == 1
        assert host.sent == [(MAIN_CHAT, TIMEOUT_NOTICE)]

    def test_agent_error_is_silent(self, db: DbConnection, host: FakeHost) -> None:
        _store(db, "1", "hello", 1)
        host.responses = [
            AgentResponse(status="error", error="bad output", error_kind="contract")
        ]

        done = asyncio.run(process_new_messages(db, host))

        assert done == 1
        assert host.sent == []
        assert get_router_state(db, WATERMARK_KEY) == "2024-01-01T00:00:01+00:00"

    def test_reply_is_journaled(
        self, db: DbConnection, host: FakeHost, settings: Settings
    ) -> None:
        _store(db, "1", "remember the milk", 1)

        asyncio.run(process_new_messages(db, host))

        journal = (settings.notes_dir / "main" / "journal.md").read_text()
        assert "## 2024-01-01T12:00:00+00:00" in journal
        assert "- user: remember the milk" in journal
        assert "- reply: ok" in journal


class TestReview:
    def test_review_is_sent_for_code_work(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "please refactor the parser", 1)
        host.responses = [
            AgentResponse(status="success", result="Here is the refactor"),
            AgentResponse(status="success", result="- missing tests for empty input"),
        ]

        asyncio.run(process_new_messages(db, host))

        assert host.sent == [
            (MAIN_CHAT, "Here is the refactor"),
            (MAIN_CHAT, "review\n- missing tests for empty input"),
        ]
        review_request, tracked = host.calls[1]
        assert not tracked
        assert review_request.model == host.settings.review_model
        assert review_request.reasoning_effort == "high"

    def test_clean_review_is_suppressed(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "please refactor the parser", 1)
        host.responses = [
            AgentResponse(status="success", result="Done"),
            AgentResponse(status="success", result="No issues found."),
        ]

        asyncio.run(process_new_messages(db, host))

        assert host.sent == [(MAIN_CHAT, "Done")]

    def test_review_failure_does_not_replay_turn(
        self, db: DbConnection, host: FakeHost
    ) -> None:
        _store(db, "1", "please refactor the parser", 1)
        host.responses = [
            AgentResponse(status="success", result="Done"),
            RuntimeError("review sandbox crashed"),
        ]

        done = asyncio.run(process_new_messages(db, host))

        assert done == 1
        assert host.sent == [(MAIN_CHAT, "Done")]


def test_prompt_includes_retrieved_history(
    db: DbConnection, settings: Settings
) -> None:
    _store(db, "1", "the kubernetes cluster password rotated", 1)
    _store(db, "2", "lunch?", 2)
    _store(db, "3", "sure", 3)
    _store(db, "4", "pizza", 4)
    msg = _store(db, "5", "what happened with kubernetes", 5)

    prompt = build_prompt(db, msg, msg.content, settings)

    assert '<retrieved terms="happened, kubernetes">' in prompt
    assert "the kubernetes cluster password rotated" in prompt
    messages_block = prompt.split("<messages>")[1]
    assert "lunch?" not in messages_block
    assert "pizza" in messages_block
    assert "what happened with kubernetes" in messages_block


def test_message_loop_polls_until_stopped(db: DbConnection, host: FakeHost) -> None:
    _store(db, "1", "hi", 1)
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    asyncio.run(
        run_message_loop(
            db,
            host,
            poll_interval=0.1,
            should_stop=lambda: len(sleeps) >= 2,
            sleep=fake_sleep,
        )
    )

    assert len(host.calls) == 1
    assert sleeps == [0.1, 0.1]
