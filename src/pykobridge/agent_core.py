"""Claude agent query used inside the sandbox by :mod:`pykobridge.runner`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
)

# The SDK logs "Using bundled Claude Code CLI: ..." on every spawn.
logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    logging.WARNING
)

THINKING_BUDGETS = {"low": 2_000, "medium": 8_000, "high": 24_000}

_DEFAULT_ALLOWED_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
]


class AgentRunError(RuntimeError):
    """The agent finished its turn with an error result."""


@dataclass
class AgentRun:
    """Outcome of one agent turn: the final message and the session it lives in."""

    text: str
    session_id: str | None = None


async def consume_response(client: ClaudeSDKClient) -> AgentRun:
    """Drain *client*.receive_response() into an :class:`AgentRun`.

    The final ``ResultMessage.result`` is the agent's last message and is
    preferred; streamed text blocks are the fallback when it is empty.
    """
    streamed: list[str] = []
    final: ResultMessage | None = None

    async for message in client.receive_response():
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock) and block.text:
                    streamed.append(block.text)
        elif isinstance(message, ResultMessage):
            final = message

    if final is None:
        raise AgentRunError("agent stream ended without a result")
    if final.is_error:
        raise AgentRunError(final.result or f"agent turn failed ({final.subtype})")
    text = final.result or (streamed[-1] if streamed else "")
    return AgentRun(text=text, session_id=final.session_id)


async def query_agent(
    prompt: str,
    *,
    workdir: Path,
    model: str | None = None,
    reasoning_effort: str | None = None,
    resume_session_id: str | None = None,
    system_prompt: str | None = None,
) -> AgentRun:
    """Send *prompt* to the Claude agent and return its final answer."""
    workdir.mkdir(parents=True, exist_ok=True)

    options = ClaudeAgentOptions(
        cwd=str(workdir),
        permission_mode="bypassPermissions",
        model=model,
        allowed_tools=list(_DEFAULT_ALLOWED_TOOLS),
        setting_sources=["project"],
        system_prompt=system_prompt,
        resume=resume_session_id,
        max_thinking_tokens=THINKING_BUDGETS.get(reasoning_effort or ""),
        env={"SHELL": "/bin/bash"},
    )

    async with ClaudeSDKClient(options) as client:
        await client.query(prompt)
        return await consume_response(client)
