"""Host side of the Agent Invocation Contract.

One call to :meth:`SandboxRunner.invoke` launches the sandbox command, pipes
the :class:`~pykobridge.contracts.AgentRequest` to its stdin, and reads the
:class:`~pykobridge.contracts.AgentResponse` back from a per-invocation
output file.  Stdout is only scanned for the marker-bracketed status line;
stderr is kept as diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pykobridge.config import Settings
from pykobridge.contracts import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    AgentRequest,
    AgentResponse,
    ErrorKind,
)
from pykobridge.ipc import IpcQueue

log = logging.getLogger(__name__)

TIMEOUT_NOTICE = "Timed out running the agent. Try again or narrow the request."
_READ_CHUNK = 64 * 1024


def _error(kind: ErrorKind, message: str) -> AgentResponse:
    return AgentResponse(status="error", error=message, error_kind=kind)


async def read_capped(
    stream: asyncio.StreamReader, limit: int
) -> tuple[bytes, bool]:
    """Read *stream* to EOF keeping at most *limit* bytes.

    The rest is read and dropped so the child never blocks on a full pipe.
    Returns the kept bytes and whether anything was dropped.
    """
    kept = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        room = limit - len(kept)
        if room > 0:
            kept += chunk[:room]
        if len(chunk) > room:
            truncated = True
    return bytes(kept), truncated


async def _feed_stdin(proc: asyncio.subprocess.Process, payload: bytes) -> None:
    assert proc.stdin is not None
    try:
        proc.stdin.write(payload)
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        log.debug("Sandbox closed stdin before reading the request")
    finally:
        proc.stdin.close()


def extract_status_line(stdout: str) -> str | None:
    """Return the last line bracketed by the output markers, if any."""
    start = stdout.rfind(OUTPUT_START_MARKER)
    if start == -1:
        return None
    end = stdout.find(OUTPUT_END_MARKER, start)
    if end == -1:
        return None
    body = stdout[start + len(OUTPUT_START_MARKER) : end].strip()
    return body.splitlines()[-1] if body else None


class SandboxRunner:
    def __init__(self, settings: Settings, queue: IpcQueue) -> None:
        self.settings = settings
        self.queue = queue

    def _command(self, sandbox_config: dict[str, Any] | None) -> Sequence[str]:
        if sandbox_config and sandbox_config.get("command"):
            return list(sandbox_config["command"])
        return list(self.settings.sandbox_command)

    def _environment(self, request: AgentRequest, output_path: Path) -> dict[str, str]:
        folder = request.group_folder
        env = dict(os.environ)
        env.update(
            {
                "PYKOBRIDGE_OUTPUT_PATH": str(output_path),
                "PYKOBRIDGE_IPC_NAMESPACE_DIR": str(self.queue.namespace_dir(folder)),
                "PYKOBRIDGE_WORKDIR": str(self.settings.groups_dir / folder),
                "PYKOBRIDGE_NOTES_DIR": str(self.settings.notes_dir / folder),
            }
        )
        return env

    async def invoke(
        self, request: AgentRequest, *, sandbox_config: dict[str, Any] | None = None
    ) -> AgentResponse:
        """Run *request*, retrying once without the session if a resume fails.

        Any failure of the resumed attempt, a timeout included, gets one
        fresh retry; the caller sees the retry's response.
        """
        response = await self._attempt(request, sandbox_config)
        if response.status == "error" and request.session_id:
            log.warning(
                "Resumed run for %s failed (session=%s): %s; retrying fresh",
                request.group_folder,
                request.session_id,
                response.error,
            )
            fresh = request.model_copy(update={"session_id": None})
            response = await self._attempt(fresh, sandbox_config)
        return response

    async def _attempt(
        self, request: AgentRequest, sandbox_config: dict[str, Any] | None
    ) -> AgentResponse:
        try:
            return await self._run_once(request, sandbox_config)
        except Exception as e:
            log.exception("Sandbox invocation for %s failed", request.group_folder)
            return _error("runtime", str(e) or type(e).__name__)

    async def _run_once(
        self, request: AgentRequest, sandbox_config: dict[str, Any] | None
    ) -> AgentResponse:
        output_dir = self.queue.ensure_namespace(request.group_folder) / "output"
        output_dir.mkdir(parents=True, exist_ok=True)
        workdir = self.settings.groups_dir / request.group_folder
        workdir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"{uuid.uuid4().hex}.json"
        command = self._command(sandbox_config)

        log.info(
            "Invoking agent for %s (model=%s, resume=%s, scheduled=%s)",
            request.group_folder,
            request.model,
            bool(request.session_id),
            request.is_scheduled_task,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(request, output_path),
            )
        except OSError as e:
            return _error("launch", f"failed to launch sandbox: {e}")

        try:
            (stdout_b, _), (stderr_b, stderr_cut), _, _ = await asyncio.wait_for(
                asyncio.gather(
                    read_capped(proc.stdout, self.settings.max_output_bytes),
                    read_capped(proc.stderr, self.settings.max_stderr_chars),
                    _feed_stdin(proc, request.model_dump_json().encode()),
                    proc.wait(),
                ),
                timeout=self.settings.agent_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            output_path.unlink(missing_ok=True)
            log.error(
                "Agent for %s timed out after %ss",
                request.group_folder,
                self.settings.agent_timeout,
            )
            return _error(
                "timeout", f"agent timed out after {self.settings.agent_timeout:g}s"
            )

        stderr = stderr_b.decode(errors="replace")[: self.settings.max_stderr_chars]
        if stderr_cut:
            log.warning(
                "Sandbox stderr for %s truncated to %d bytes",
                request.group_folder,
                self.settings.max_stderr_chars,
            )
        if stderr.strip():
            log.debug(
                "Sandbox stderr for %s:\n%s", request.group_folder, stderr.rstrip()
            )

        try:
            return self._read_output(
                output_path, proc.returncode, stdout_b.decode(errors="replace"), stderr
            )
        finally:
            output_path.unlink(missing_ok=True)

    def _read_output(
        self, output_path: Path, returncode: int | None, stdout: str, stderr: str
    ) -> AgentResponse:
        if not output_path.is_file():
            detail = extract_status_line(stdout)
            if detail is None:
                lines = stderr.strip().splitlines()
                detail = lines[-1] if lines else "no diagnostics"
            return _error(
                "output",
                f"agent output file missing (exit code {returncode}): {detail}",
            )
        if output_path.stat().st_size > self.settings.max_output_bytes:
            return _error(
                "output",
                f"agent output exceeds {self.settings.max_output_bytes} bytes",
            )
        try:
            response = AgentResponse.model_validate_json(output_path.read_bytes())
        except ValidationError as e:
            return _error("contract", f"malformed agent output: {e}")
        if returncode and response.status == "success":
            log.warning("Agent exited with code %s but reported success", returncode)
        return response
