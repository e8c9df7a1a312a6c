"""Process owner: shared state, the three polling loops, and shutdown.

Sessions, tasks and messages live in the database.  The orchestrator holds
only what is process-local: the tenant registry cache, per-tenant locks,
model preferences (loaded from disk) and the recent-outgoing cache.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pykobridge.config import Settings
from pykobridge.contracts import AgentRequest, AgentResponse
from pykobridge.db import (
    DbConnection,
    get_all_chats,
    get_all_registered_groups,
    get_all_tasks,
    get_session,
    set_registered_group,
    set_session,
)
from pykobridge.dispatch import run_message_loop
from pykobridge.gateway import ChatGateway
from pykobridge.ipc import (
    IpcHandler,
    IpcQueue,
    write_groups_snapshot,
    write_tasks_snapshot,
)
from pykobridge.models import RegisteredGroup
from pykobridge.routing import ModelPreferences
from pykobridge.sandbox import SandboxRunner
from pykobridge.scheduler import run_scheduler

log = logging.getLogger(__name__)


class InstanceLockError(RuntimeError):
    pass


class InstanceLock:
    """Pid file guarding against two bridges sharing one data directory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.held = False

    @staticmethod
    def _pid_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _existing_pid(self) -> int | None:
        try:
            return int(json.loads(self.path.read_text())["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {"pid": os.getpid(), "started_at": datetime.now(timezone.utc).isoformat()}
        )
        for _ in range(2):
            try:
                with self.path.open("x") as f:
                    f.write(payload + "\n")
            except FileExistsError:
                pid = self._existing_pid()
                if pid and pid != os.getpid() and self._pid_running(pid):
                    raise InstanceLockError(
                        f"Another pykobridge instance is already running (pid {pid})"
                    ) from None
                log.warning("Removing stale instance lock %s", self.path)
                self.path.unlink(missing_ok=True)
            else:
                self.held = True
                return
        raise InstanceLockError(f"Failed to acquire instance lock {self.path}")

    def release(self) -> None:
        if self.held and self._existing_pid() == os.getpid():
            self.path.unlink(missing_ok=True)
        self.held = False


class OutgoingCache:
    """Last text sent per chat, for suppressing immediate repeats."""

    def __init__(
        self, window: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.window = window
        self.clock = clock
        self._last: dict[str, tuple[str, float]] = {}

    def is_duplicate(self, chat_id: str, text: str) -> bool:
        last = self._last.get(chat_id)
        if last is None:
            return False
        last_text, sent_at = last
        return last_text == text.strip() and self.clock() - sent_at <= self.window

    def track(self, chat_id: str, text: str) -> None:
        self._last[chat_id] = (text.strip(), self.clock())


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        db: DbConnection,
        gateway: ChatGateway,
        *,
        sandbox: SandboxRunner | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.gateway = gateway
        self.main_folder = settings.main_folder
        self.timezone = settings.timezone

        self.queue = IpcQueue(settings.ipc_dir)
        self.sandbox = sandbox or SandboxRunner(settings, self.queue)
        self.prefs = ModelPreferences(settings.model_prefs_path)
        self.outgoing = OutgoingCache(settings.duplicate_window)
        self.instance_lock = InstanceLock(settings.lock_path)
        self.ipc_handler = IpcHandler(
            db,
            main_folder=settings.main_folder,
            timezone=settings.timezone,
            send_message=self.send_message,
            on_groups_changed=self.refresh_groups,
        )

        self._groups: dict[str, RegisteredGroup] = {}
        self._tenant_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._shutdown = asyncio.Event()

    # --- State ---

    @property
    def groups(self) -> Mapping[str, RegisteredGroup]:
        return self._groups

    def load_state(self) -> None:
        self.prefs.load()
        self.ensure_main_group()
        self._load_groups()
        log.info("State loaded: %d tenant(s)", len(self._groups))

    def _load_groups(self) -> None:
        self._groups = {g.chat_id: g for g in get_all_registered_groups(self.db)}
        for group in self._groups.values():
            self.queue.ensure_namespace(group.folder)
            (self.settings.groups_dir / group.folder).mkdir(parents=True, exist_ok=True)

    def ensure_main_group(self) -> None:
        """Register the owner's private chat as the main tenant if missing."""
        if self.group_for_folder(self.main_folder, reload=True):
            return
        owner = self.settings.telegram_owner_id
        if not owner:
            log.warning("No main tenant registered and no owner id configured")
            return
        set_registered_group(
            self.db,
            RegisteredGroup(
                chat_id=f"telegram:{owner}",
                name="main",
                folder=self.main_folder,
                trigger=f"@{self.settings.assistant_name}",
                requires_trigger=False,
                added_at=datetime.now(timezone.utc).isoformat(),
            ),
        )
        log.info("Registered owner chat telegram:%s as main tenant", owner)

    def group_for_folder(
        self, folder: str, *, reload: bool = False
    ) -> RegisteredGroup | None:
        groups = (
            get_all_registered_groups(self.db) if reload else self._groups.values()
        )
        for group in groups:
            if group.folder == folder:
                return group
        return None

    async def refresh_groups(self) -> None:
        self._load_groups()
        write_groups_snapshot(
            self.queue,
            self.main_folder,
            get_all_chats(self.db),
            list(self._groups.values()),
        )
        log.info("Tenant registry refreshed: %d tenant(s)", len(self._groups))

    # --- Agent invocation ---

    def _write_tasks_snapshot(self, folder: str, is_main: bool) -> None:
        try:
            write_tasks_snapshot(self.queue, folder, is_main, get_all_tasks(self.db))
        except OSError:
            log.warning("Failed to write tasks snapshot for %s", folder, exc_info=True)

    async def run_agent(
        self,
        request: AgentRequest,
        *,
        track_session: bool,
        sandbox_config: dict[str, Any] | None = None,
    ) -> AgentResponse:
        """Invoke the sandbox for *request*.

        With *track_session* the tenant's stored session is resumed and
        replaced by the new one, all under the tenant's lock.  Otherwise the
        run starts fresh and leaves the stored session alone.
        """
        if request.model is None:
            selection = self.prefs.select(request.prompt, request.chat_id)
            request = request.model_copy(
                update={
                    "model": selection.model,
                    "reasoning_effort": selection.reasoning_effort,
                }
            )
        folder = request.group_folder
        self._write_tasks_snapshot(folder, request.is_main)

        if not track_session:
            return await self.sandbox.invoke(
                request.model_copy(update={"session_id": None}),
                sandbox_config=sandbox_config,
            )

        async with self._tenant_locks[folder]:
            session = get_session(self.db, folder)
            request = request.model_copy(
                update={"session_id": session.session_id if session else None}
            )
            response = await self.sandbox.invoke(request, sandbox_config=sandbox_config)
            if response.status == "success" and response.new_session_id:
                set_session(self.db, folder, response.new_session_id)
        return response

    async def send_message(self, chat_id: str, text: str) -> str | None:
        """Send through the gateway unless it repeats the last message.

        Returns the delivery timestamp, or ``None`` when suppressed.
        """
        text = text.strip()
        if not text:
            return None
        if self.outgoing.is_duplicate(chat_id, text):
            log.info("Duplicate outgoing message to %s suppressed", chat_id)
            return None
        timestamp = await self.gateway.send(chat_id, text)
        self.outgoing.track(chat_id, text)
        return timestamp

    # --- Loops ---

    def stopping(self) -> bool:
        return self._shutdown.is_set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_ipc(self) -> int:
        handled = 0
        for namespace in self.queue.namespaces():
            handled += len(await self.queue.drain(namespace, self.ipc_handler))
        return handled

    async def run_ipc_loop(self) -> None:
        log.info("IPC watcher started")
        while not self.stopping():
            try:
                await self.process_ipc()
            except Exception:
                log.exception("Error in IPC loop")
            await self._sleep(self.settings.ipc_poll_interval)

    def request_shutdown(self, reason: str = "requested") -> None:
        if not self._shutdown.is_set():
            log.info("Shutting down (%s); waiting for in-flight work", reason)
            self._shutdown.set()

    async def run(self) -> None:
        self.instance_lock.acquire()
        try:
            self.load_state()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)

            await self.gateway.start()
            try:
                await asyncio.gather(
                    run_message_loop(
                        self.db,
                        self,
                        poll_interval=self.settings.poll_interval,
                        should_stop=self.stopping,
                        sleep=self._sleep,
                    ),
                    run_scheduler(
                        self.db,
                        self,
                        poll_interval=self.settings.scheduler_poll_interval,
                        should_stop=self.stopping,
                        sleep=self._sleep,
                    ),
                    self.run_ipc_loop(),
                )
            finally:
                await self.gateway.stop()
        finally:
            self.instance_lock.release()
            log.info("Shutdown complete")
