"""Message Dispatch Loop: stored inbound messages → agent turns → replies."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol

from pykobridge.config import Settings
from pykobridge.contracts import AgentRequest, AgentResponse
from pykobridge.db import (
    DbConnection,
    get_new_messages,
    get_recent_messages,
    get_router_state,
    search_messages,
    set_router_states,
)
from pykobridge.gateway import ChatGateway
from pykobridge.memory import (
    append_journal_entry,
    build_review_prompt,
    extract_search_terms,
    format_review,
    format_transcript,
    should_auto_review,
)
from pykobridge.models import ChatMessage, RegisteredGroup
from pykobridge.routing import ModelPreferences, handle_model_command
from pykobridge.sandbox import TIMEOUT_NOTICE

log = logging.getLogger(__name__)

WATERMARK_KEY = "last_timestamp"
WATERMARK_ID_KEY = "last_message_id"


class DispatchHost(Protocol):
    settings: Settings
    prefs: ModelPreferences
    gateway: ChatGateway

    @property
    def groups(self) -> Mapping[str, RegisteredGroup]: ...

    async def run_agent(
        self,
        request: AgentRequest,
        *,
        track_session: bool,
        sandbox_config: dict | None = None,
    ) -> AgentResponse: ...

    async def send_message(self, chat_id: str, text: str) -> str | None: ...


def strip_trigger(
    content: str, group: RegisteredGroup, settings: Settings, *, is_main: bool
) -> str | None:
    """Return the prompt text addressed to *group*, or ``None`` if not addressed.

    The main tenant answers everything; other tenants need their wake
    trigger (or the assistant mention) at the start of the message unless
    ``requires_trigger`` is off.  A matched trigger is removed.
    """
    content = content.strip()
    patterns = [settings.trigger_pattern]
    if group.trigger:
        patterns.insert(
            0, re.compile(rf"^{re.escape(group.trigger)}(?!\w)", re.IGNORECASE)
        )
    for pattern in patterns:
        match = pattern.match(content)
        if match:
            return content[match.end() :].lstrip(" ,:").strip()
    if is_main or not group.requires_trigger:
        return content
    return None


def build_prompt(
    db: DbConnection, msg: ChatMessage, query: str, settings: Settings
) -> str:
    """Render the recency window plus keyword hits from older history."""
    recent = [
        m
        for m in get_recent_messages(db, msg.chat_id, settings.recent_messages)
        if m.timestamp <= msg.timestamp
    ]
    terms = extract_search_terms(query)
    before = recent[0].timestamp if recent else msg.timestamp
    retrieved = search_messages(
        db, msg.chat_id, terms, before=before, limit=settings.retrieval_limit
    )
    return format_transcript(
        recent or [msg],
        retrieved,
        terms,
        hit_max_chars=settings.retrieval_max_chars,
    )


async def review_reply(
    host: DispatchHost, group: RegisteredGroup, query: str, reply: str
) -> None:
    """Second opinion on code-like turns from an isolated, untracked run."""
    response = await host.run_agent(
        AgentRequest(
            prompt=build_review_prompt(query, reply),
            group_folder=group.folder,
            chat_id=group.chat_id,
            is_main=group.folder == host.settings.main_folder,
            model=host.settings.review_model,
            reasoning_effort="high",
        ),
        track_session=False,
        sandbox_config=group.sandbox_config,
    )
    if response.status == "error":
        log.warning("Review run for %s failed: %s", group.folder, response.error)
        return
    review = format_review(response.result)
    if review:
        await host.send_message(group.chat_id, review)


async def process_message(
    msg: ChatMessage, db: DbConnection, host: DispatchHost
) -> None:
    """Handle one inbound message end to end.

    Raises if the message should be offered again; returning normally means
    the watermark may move past it.
    """
    group = host.groups.get(msg.chat_id)
    if group is None:
        return
    settings = host.settings
    is_main = group.folder == settings.main_folder

    query = strip_trigger(msg.content, group, settings, is_main=is_main)
    if query is None:
        log.debug("Message %s is not addressed to %s", msg.id, group.folder)
        return

    command_reply = handle_model_command(query, msg.chat_id, host.prefs)
    if command_reply is not None:
        await host.send_message(msg.chat_id, command_reply)
        return
    if not query:
        return

    prompt = build_prompt(db, msg, query, settings)
    selection = host.prefs.select(query, msg.chat_id)
    log.info(
        "Processing message %s for %s (model=%s, mode=%s)",
        msg.id,
        group.folder,
        selection.model,
        selection.mode,
    )

    await host.gateway.set_typing(msg.chat_id, True)
    try:
        response = await host.run_agent(
            AgentRequest(
                prompt=prompt,
                group_folder=group.folder,
                chat_id=msg.chat_id,
                is_main=is_main,
                model=selection.model,
                reasoning_effort=selection.reasoning_effort,
            ),
            track_session=True,
            sandbox_config=group.sandbox_config,
        )
    finally:
        await host.gateway.set_typing(msg.chat_id, False)

    if response.status == "error":
        if response.timed_out:
            await host.send_message(msg.chat_id, TIMEOUT_NOTICE)
        else:
            log.error("Agent error for %s: %s", group.folder, response.error)
        return
    if not response.result:
        return

    sent_at = await host.send_message(msg.chat_id, response.result)
    append_journal_entry(
        settings.notes_dir,
        group_folder=group.folder,
        chat_id=msg.chat_id,
        user_text=query,
        reply_text=response.result,
        model=selection.model,
        reasoning_effort=selection.reasoning_effort,
        timestamp=sent_at or msg.timestamp,
        max_chars=settings.journal_max_chars,
    )

    if should_auto_review(query):
        # The reply is already out; a failed review must not replay the turn.
        try:
            await review_reply(host, group, query, response.result)
        except Exception:
            log.exception("Review pass for %s failed", group.folder)


async def process_new_messages(db: DbConnection, host: DispatchHost) -> int:
    """Process the backlog past the watermark.  Returns how many completed.

    The watermark only moves past a message once it has been handled; the
    first failure ends the batch so the same message comes back next poll.
    """
    since = get_router_state(db, WATERMARK_KEY) or ""
    since_id = get_router_state(db, WATERMARK_ID_KEY) or ""
    messages = get_new_messages(db, list(host.groups), since, since_id)
    if messages:
        log.info("%d new message(s)", len(messages))

    done = 0
    for msg in messages:
        try:
            await process_message(msg, db, host)
        except Exception:
            log.exception("Error processing message %s; will retry", msg.id)
            break
        set_router_states(
            db, {WATERMARK_KEY: msg.timestamp, WATERMARK_ID_KEY: msg.id}
        )
        done += 1
    return done


async def run_message_loop(
    db: DbConnection,
    host: DispatchHost,
    *,
    poll_interval: float,
    should_stop: Callable[[], bool] = lambda: False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    log.info("Message loop started (trigger: @%s)", host.settings.assistant_name)
    while not should_stop():
        try:
            await process_new_messages(db, host)
        except Exception:
            log.exception("Error in message loop")
        await sleep(poll_interval)
