from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from pykobridge.models import (
    Chat,
    ChatMessage,
    RegisteredGroup,
    ScheduledTask,
    Session,
    TaskRunLog,
)


class ThreadSafeConnection:
    """Thin wrapper around :class:`sqlite3.Connection` that serialises access
    with a :class:`threading.Lock`.

    The gateway's polling callbacks, the three orchestrator loops and the CLI
    all share one connection, so every statement acquires the lock first.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executemany(self, sql: str, seq_of_parameters: Any) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(sql, seq_of_parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def rollback(self) -> None:
        with self._lock:
            self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Acquire lock, yield raw connection, commit on success / rollback on error.

        The lock is held for the entire transaction so that multiple
        statements execute atomically.
        """
        self._lock.acquire()
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def row_factory(self) -> Any:
        return self._conn.row_factory

    @row_factory.setter
    def row_factory(self, value: Any) -> None:
        self._conn.row_factory = value


DbConnection = sqlite3.Connection | ThreadSafeConnection

ModelT = TypeVar("ModelT", bound=BaseModel)


def _rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    """Convert a list of sqlite3.Row objects to a list of model instances."""
    return [model(**row) for row in rows]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)

    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT NOT NULL,
            chat_id TEXT NOT NULL,
            sender TEXT NOT NULL,
            sender_name TEXT NOT NULL,
            content TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            is_from_me INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (id, chat_id)
        );

        CREATE TABLE IF NOT EXISTS chats (
            chat_id TEXT PRIMARY KEY,
            name TEXT,
            last_message_time TEXT
        );

        CREATE TABLE IF NOT EXISTS registered_groups (
            chat_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            folder TEXT NOT NULL UNIQUE,
            trigger TEXT NOT NULL,
            requires_trigger INTEGER NOT NULL DEFAULT 1,
            sandbox_config TEXT,
            added_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sessions (
            folder TEXT PRIMARY KEY,
            session_id TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            group_folder TEXT NOT NULL,
            chat_id TEXT NOT NULL,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_value TEXT NOT NULL,
            context_mode TEXT DEFAULT 'isolated',
            next_run TEXT,
            last_run TEXT,
            last_result TEXT,
            status TEXT DEFAULT 'active',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS task_run_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error TEXT,
            FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
        );

        CREATE TABLE IF NOT EXISTS router_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(chat_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_next_run ON scheduled_tasks(next_run);
        CREATE INDEX IF NOT EXISTS idx_status ON scheduled_tasks(status);
        CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);
    """)
    )

    db.commit()
    return db


# --- Messages and chats ---


def store_message(db: DbConnection, message: ChatMessage) -> None:
    db.execute(
        dedent("""\
        INSERT OR REPLACE INTO messages
            (id, chat_id, sender, sender_name, content, timestamp, is_from_me)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """),
        (
            message.id,
            message.chat_id,
            message.sender,
            message.sender_name,
            message.content,
            message.timestamp,
            int(message.is_from_me),
        ),
    )
    db.commit()
    upsert_chat(db, message.chat_id, last_message_time=message.timestamp)


def get_new_messages(
    db: DbConnection, chat_ids: Sequence[str], since: str, since_id: str = ""
) -> list[ChatMessage]:
    """Return inbound messages past the (*since*, *since_id*) mark, oldest first.

    Messages stamped exactly *since* still count as new when their id sorts
    after *since_id*, matching the `ORDER BY timestamp, id` walk.

    Messages sent by the bot itself are excluded so the loop never answers
    its own replies.
    """
    if not chat_ids:
        return []
    placeholders = ", ".join("?" for _ in chat_ids)
    rows = db.execute(
        dedent(f"""\
        SELECT * FROM messages
        WHERE (timestamp > ? OR (timestamp = ? AND id > ?))
          AND chat_id IN ({placeholders}) AND is_from_me = 0
        ORDER BY timestamp, id
    """),
        (since, since, since_id, *chat_ids),
    ).fetchall()
    return _rows_to(ChatMessage, rows)


def get_recent_messages(
    db: DbConnection, chat_id: str, limit: int
) -> list[ChatMessage]:
    """Return the last *limit* messages in a chat in chronological order."""
    rows = db.execute(
        dedent("""\
        SELECT * FROM (
            SELECT * FROM messages WHERE chat_id = ?
            ORDER BY timestamp DESC, id DESC LIMIT ?
        ) ORDER BY timestamp, id
    """),
        (chat_id, limit),
    ).fetchall()
    return _rows_to(ChatMessage, rows)


def search_messages(
    db: DbConnection,
    chat_id: str,
    terms: Sequence[str],
    before: str | None = None,
    limit: int = 8,
) -> list[ChatMessage]:
    """Keyword search over a chat's history, newest hits first.

    A message matches when it contains any of *terms* (case-insensitive).
    *before* restricts hits to messages older than the recency window.
    """
    if not terms:
        return []
    clauses = " OR ".join("LOWER(content) LIKE ?" for _ in terms)
    params: list[Any] = [chat_id]
    params.extend(f"%{term.lower()}%" for term in terms)
    sql = f"SELECT * FROM messages WHERE chat_id = ? AND ({clauses})"
    if before:
        sql += " AND timestamp < ?"
        params.append(before)
    sql += " ORDER BY timestamp DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(sql, params).fetchall()
    return _rows_to(ChatMessage, rows)


def upsert_chat(
    db: DbConnection,
    chat_id: str,
    *,
    name: str | None = None,
    last_message_time: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO chats (chat_id, name, last_message_time)
        VALUES (?, ?, ?)
        ON CONFLICT(chat_id) DO UPDATE SET
            name = COALESCE(excluded.name, chats.name),
            last_message_time = NULLIF(MAX(
                COALESCE(excluded.last_message_time, ''),
                COALESCE(chats.last_message_time, '')
            ), '')
    """),
        (chat_id, name, last_message_time),
    )
    db.commit()


def get_all_chats(db: DbConnection) -> list[Chat]:
    rows = db.execute(
        "SELECT * FROM chats ORDER BY last_message_time DESC"
    ).fetchall()
    return _rows_to(Chat, rows)


# --- Tenants ---


def _row_to_group(row: sqlite3.Row) -> RegisteredGroup:
    data = dict(row)
    raw_config = data.pop("sandbox_config")
    return RegisteredGroup(
        **data, sandbox_config=json.loads(raw_config) if raw_config else None
    )


def set_registered_group(db: DbConnection, group: RegisteredGroup) -> None:
    db.execute(
        dedent("""\
        INSERT INTO registered_groups
            (chat_id, name, folder, trigger, requires_trigger, sandbox_config, added_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(chat_id) DO UPDATE SET
            name = excluded.name,
            folder = excluded.folder,
            trigger = excluded.trigger,
            requires_trigger = excluded.requires_trigger,
            sandbox_config = excluded.sandbox_config
    """),
        (
            group.chat_id,
            group.name,
            group.folder,
            group.trigger,
            int(group.requires_trigger),
            json.dumps(group.sandbox_config) if group.sandbox_config else None,
            group.added_at,
        ),
    )
    db.commit()


def get_registered_group(db: DbConnection, chat_id: str) -> RegisteredGroup | None:
    row = db.execute(
        "SELECT * FROM registered_groups WHERE chat_id = ?", (chat_id,)
    ).fetchone()
    return _row_to_group(row) if row else None


def get_all_registered_groups(db: DbConnection) -> list[RegisteredGroup]:
    rows = db.execute("SELECT * FROM registered_groups ORDER BY added_at").fetchall()
    return [_row_to_group(row) for row in rows]


# --- Sessions ---


def set_session(db: DbConnection, folder: str, session_id: str | None) -> None:
    db.execute(
        dedent("""\
        INSERT INTO sessions (folder, session_id, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(folder) DO UPDATE SET
            session_id = excluded.session_id,
            updated_at = excluded.updated_at
    """),
        (folder, session_id, _now()),
    )
    db.commit()


def get_session(db: DbConnection, folder: str) -> Session | None:
    row = db.execute("SELECT * FROM sessions WHERE folder = ?", (folder,)).fetchone()
    return Session(**row) if row else None


def get_all_sessions(db: DbConnection) -> list[Session]:
    rows = db.execute("SELECT * FROM sessions ORDER BY updated_at DESC").fetchall()
    return _rows_to(Session, rows)


def delete_session(db: DbConnection, folder: str) -> None:
    db.execute("DELETE FROM sessions WHERE folder = ?", (folder,))
    db.commit()


# --- Router state ---


def get_router_state(db: DbConnection, key: str) -> str | None:
    row = db.execute(
        "SELECT value FROM router_state WHERE key = ?", (key,)
    ).fetchone()
    return row["value"] if row else None


_UPSERT_ROUTER_STATE = dedent("""\
    INSERT INTO router_state (key, value) VALUES (?, ?)
    ON CONFLICT(key) DO UPDATE SET value = excluded.value
""")


def set_router_state(db: DbConnection, key: str, value: str) -> None:
    db.execute(_UPSERT_ROUTER_STATE, (key, value))
    db.commit()


def set_router_states(db: DbConnection, values: Mapping[str, str]) -> None:
    """Write several router_state keys in one transaction."""
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            conn.executemany(_UPSERT_ROUTER_STATE, list(values.items()))
    else:
        db.executemany(_UPSERT_ROUTER_STATE, list(values.items()))
        db.commit()


# --- Scheduled tasks ---


def create_task(
    db: DbConnection,
    *,
    task_id: str,
    group_folder: str,
    chat_id: str,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    next_run: str | None,
    context_mode: str = "isolated",
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO scheduled_tasks
            (id, group_folder, chat_id, prompt, schedule_type, schedule_value,
             context_mode, next_run, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            task_id,
            group_folder,
            chat_id,
            prompt,
            schedule_type,
            schedule_value,
            context_mode,
            next_run,
            "active",
            _now(),
        ),
    )
    db.commit()


def get_task(db: DbConnection, task_id: str) -> ScheduledTask | None:
    row = db.execute(
        "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
    ).fetchone()
    return ScheduledTask(**row) if row else None


def get_tasks_for_group(db: DbConnection, group_folder: str) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC",
        (group_folder,),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def get_all_tasks(db: DbConnection) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks ORDER BY created_at DESC"
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task(db: DbConnection, task_id: str, **updates: object) -> None:
    fields = []
    values = []

    for key in ["prompt", "schedule_type", "schedule_value", "next_run", "status"]:
        if key in updates:
            fields.append(f"{key} = ?")
            values.append(updates[key])

    if not fields:
        return

    values.append(task_id)
    db.execute(f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?", values)
    db.commit()


def delete_task(db: DbConnection, task_id: str) -> None:
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            conn.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    else:
        db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        db.commit()


def get_due_tasks(db: DbConnection, now: str | None = None) -> list[ScheduledTask]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
        ORDER BY next_run
    """),
        (now or _now(),),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task_after_run(
    db: DbConnection, task_id: str, next_run: str | None, last_result: str
) -> None:
    db.execute(
        dedent("""\
        UPDATE scheduled_tasks
        SET next_run = ?, last_run = ?, last_result = ?
        WHERE id = ?
    """),
        (next_run, _now(), last_result, task_id),
    )
    db.commit()


def log_task_run(
    db: DbConnection,
    *,
    task_id: str,
    run_at: str,
    duration_ms: int,
    status: str,
    result: str | None = None,
    error: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
        VALUES (?, ?, ?, ?, ?, ?)
    """),
        (task_id, run_at, duration_ms, status, result, error),
    )
    db.commit()


def get_task_run_logs(db: DbConnection, task_id: str) -> list[TaskRunLog]:
    rows = db.execute(
        "SELECT * FROM task_run_logs WHERE task_id = ? ORDER BY run_at DESC, id DESC",
        (task_id,),
    ).fetchall()
    return _rows_to(TaskRunLog, rows)
