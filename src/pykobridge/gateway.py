"""Chat gateway: inbound messages into the store, outbound text to chats."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol

from telegram import Bot, Message
from telegram.constants import ChatAction
from telegram.error import TelegramError

from pykobridge.db import (
    DbConnection,
    get_router_state,
    set_router_state,
    store_message,
    upsert_chat,
)
from pykobridge.models import ChatMessage

log = logging.getLogger(__name__)

TELEGRAM_PREFIX = "telegram:"
TELEGRAM_MAX_MESSAGE_CHARS = 4096
_OFFSET_KEY = "telegram_update_offset"


class GatewayError(RuntimeError):
    """A message could not be delivered."""


class ChatGateway(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def send(self, chat_id: str, text: str) -> str:
        """Deliver *text* and return the delivery timestamp (UTC ISO 8601)."""
        ...

    async def set_typing(self, chat_id: str, on: bool) -> None:
        """Best effort; never raises."""
        ...


def telegram_chat_id(chat_id: str) -> int | None:
    if not chat_id.startswith(TELEGRAM_PREFIX):
        return None
    try:
        return int(chat_id[len(TELEGRAM_PREFIX) :])
    except ValueError:
        return None


def split_message(text: str, limit: int = TELEGRAM_MAX_MESSAGE_CHARS) -> list[str]:
    """Split *text* into chunks Telegram accepts, preferring line breaks."""
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class TelegramGateway:
    """Long-polling Telegram bot.

    Inbound text is written straight to the message store; the dispatch
    loop picks it up from there.  Private chats are only accepted from the
    owner.  Sent messages are stored too, flagged ``is_from_me``.
    """

    def __init__(
        self,
        db: DbConnection,
        *,
        token: str,
        owner_id: str | None,
        assistant_name: str,
        poll_timeout: int = 30,
        retry_delay: float = 5.0,
    ) -> None:
        self.db = db
        self.bot = Bot(token=token)
        self.owner_id = owner_id
        self.assistant_name = assistant_name
        self.poll_timeout = poll_timeout
        self.retry_delay = retry_delay
        self._poll_task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        await self.bot.initialize()
        me = await self.bot.get_me()
        log.info("Connected to Telegram as @%s", me.username)
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        await self.bot.shutdown()
        log.info("Telegram gateway stopped")

    async def _poll_loop(self) -> None:
        offset = int(get_router_state(self.db, _OFFSET_KEY) or 0)
        while self._running:
            try:
                updates = await self.bot.get_updates(
                    offset=offset,
                    timeout=self.poll_timeout,
                    allowed_updates=["message"],
                )
            except TelegramError as e:
                log.warning("Failed to get Telegram updates: %s", e)
                await asyncio.sleep(self.retry_delay)
                continue

            # The offset only moves past stored updates; a failed one is
            # fetched again on the next poll.
            start = offset
            try:
                for update in updates:
                    if update.message:
                        self.handle_message(update.message)
                    offset = update.update_id + 1
            except Exception:
                log.exception("Failed to store Telegram update; will retry")
                await asyncio.sleep(self.retry_delay)
            try:
                if offset != start:
                    set_router_state(self.db, _OFFSET_KEY, str(offset))
            except Exception:
                log.exception("Failed to persist Telegram update offset")

    def handle_message(self, message: Message) -> ChatMessage | None:
        """Store one inbound Telegram message.  Returns what was stored."""
        if not message.text or message.from_user is None:
            return None

        sender_id = str(message.from_user.id)
        if message.chat.type == "private" and sender_id != self.owner_id:
            log.warning("Ignoring private message from unauthorized user %s", sender_id)
            return None

        chat_id = f"{TELEGRAM_PREFIX}{message.chat.id}"
        upsert_chat(
            self.db,
            chat_id,
            name=message.chat.title or message.chat.first_name or message.chat.username,
        )
        stored = ChatMessage(
            id=f"{message.chat.id}:{message.message_id}",
            chat_id=chat_id,
            sender=sender_id,
            sender_name=(
                message.from_user.first_name or message.from_user.username or "User"
            ),
            content=message.text,
            timestamp=message.date.astimezone(timezone.utc).isoformat(),
        )
        store_message(self.db, stored)
        return stored

    async def send(self, chat_id: str, text: str) -> str:
        tg_chat = telegram_chat_id(chat_id)
        if tg_chat is None:
            raise GatewayError(f"Unknown chat id format: {chat_id!r}")

        timestamp = datetime.now(timezone.utc).isoformat()
        for chunk in split_message(text):
            try:
                sent = await self.bot.send_message(chat_id=tg_chat, text=chunk)
            except TelegramError as e:
                raise GatewayError(f"Failed to send to {chat_id}: {e}") from e
            timestamp = sent.date.astimezone(timezone.utc).isoformat()
            store_message(
                self.db,
                ChatMessage(
                    id=f"out-{tg_chat}-{sent.message_id}",
                    chat_id=chat_id,
                    sender=f"bot:{tg_chat}",
                    sender_name=self.assistant_name,
                    content=chunk,
                    timestamp=timestamp,
                    is_from_me=True,
                ),
            )
        log.info("Message sent to %s (%d chars)", chat_id, len(text))
        return timestamp

    async def set_typing(self, chat_id: str, on: bool) -> None:
        tg_chat = telegram_chat_id(chat_id)
        if not on or tg_chat is None:
            return
        try:
            await self.bot.send_chat_action(chat_id=tg_chat, action=ChatAction.TYPING)
        except TelegramError as e:
            log.debug("Failed to set typing indicator for %s: %s", chat_id, e)


class ConsoleGateway:
    """Gateway used when no bot token is configured: sends go to the log."""

    def __init__(self, db: DbConnection, *, assistant_name: str) -> None:
        self.db = db
        self.assistant_name = assistant_name

    async def start(self) -> None:
        log.warning("No Telegram token configured; outgoing messages are only logged")

    async def stop(self) -> None:
        pass

    async def send(self, chat_id: str, text: str) -> str:
        timestamp = datetime.now(timezone.utc).isoformat()
        log.info("[%s] %s: %s", chat_id, self.assistant_name, text)
        store_message(
            self.db,
            ChatMessage(
                id=f"out-{chat_id}-{timestamp}",
                chat_id=chat_id,
                sender="bot",
                sender_name=self.assistant_name,
                content=text,
                timestamp=timestamp,
                is_from_me=True,
            ),
        )
        return timestamp

    async def set_typing(self, chat_id: str, on: bool) -> None:
        pass
