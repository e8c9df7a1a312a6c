"""Model selection per turn and the ``model …`` chat command."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, TypeAdapter, ValidationError

from pykobridge.contracts import ReasoningEffort
from pykobridge.ipc import atomic_write_json

log = logging.getLogger(__name__)

ModelMode = Literal["auto", "code", "chat", "write", "custom"]


class ModelPreference(BaseModel):
    mode: ModelMode
    model: str | None = None
    reasoning_effort: ReasoningEffort | None = None


@dataclass(frozen=True)
class ModelSelection:
    mode: str
    model: str
    reasoning_effort: ReasoningEffort | None = None
    source: Literal["auto", "preference"] = "auto"


DEFAULT_MODELS: dict[str, tuple[str, ReasoningEffort | None]] = {
    "code": ("claude-opus-4-6", "high"),
    "chat": ("claude-sonnet-4-5", None),
    "write": ("claude-opus-4-6", "high"),
}

CODE_KEYWORDS = (
    "code", "bug", "fix", "implement", "repo", "pull request", "pr", "build",
    "compile", "typescript", "javascript", "python", "node", "error", "stack",
    "trace", "function", "class", "method", "file", "log", "database", "sql",
    "schema", "migrate", "config", "regex", "git", "commit", "branch", "test",
    "lint", "ci", "deploy",
)  # fmt: skip

WRITING_KEYWORDS = (
    "write", "draft", "rewrite", "edit", "polish", "copy", "blog", "post",
    "article", "newsletter", "email", "proposal", "memo", "press release",
    "summary", "outline", "story", "script", "pitch", "brief",
)  # fmt: skip

_MODE_ALIASES: dict[str, ModelMode] = {
    "auto": "auto",
    "default": "auto",
    "code": "code",
    "coding": "code",
    "chat": "chat",
    "conversation": "chat",
    "write": "write",
    "writing": "write",
}

_COMMAND_RE = re.compile(
    r"^(?:(?:use|set|switch)\s+)?model\b|^use\s+(?:gpt|claude)-", re.IGNORECASE
)

_prefs_adapter = TypeAdapter(dict[str, ModelPreference])


def classify_mode(content: str) -> Literal["code", "write", "chat"]:
    lowered = content.lower()
    if any(k in lowered for k in WRITING_KEYWORDS):
        return "write"
    if any(k in lowered for k in CODE_KEYWORDS):
        return "code"
    return "chat"


def resolve_model_selection(
    content: str, chat_id: str, prefs: dict[str, ModelPreference]
) -> ModelSelection:
    """Pick the model for a turn: explicit preference first, then content."""
    pref = prefs.get(chat_id)
    if pref and pref.mode != "auto":
        if pref.mode == "custom" and pref.model:
            return ModelSelection(
                "custom", pref.model, pref.reasoning_effort, source="preference"
            )
        if pref.mode in DEFAULT_MODELS:
            model, effort = DEFAULT_MODELS[pref.mode]
            return ModelSelection(pref.mode, model, effort, source="preference")

    detected = classify_mode(content)
    model, effort = DEFAULT_MODELS[detected]
    return ModelSelection(detected, model, effort, source="auto")


class ModelPreferences:
    """Per-chat model preferences persisted to a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.prefs: dict[str, ModelPreference] = {}

    def load(self) -> None:
        try:
            self.prefs = _prefs_adapter.validate_json(self.path.read_bytes())
        except FileNotFoundError:
            self.prefs = {}
        except (OSError, ValidationError):
            log.warning("Ignoring unreadable model preferences at %s", self.path)
            self.prefs = {}

    def save(self) -> None:
        atomic_write_json(
            self.path,
            {k: v.model_dump(exclude_none=True) for k, v in self.prefs.items()},
        )

    def get(self, chat_id: str) -> ModelPreference | None:
        return self.prefs.get(chat_id)

    def set(self, chat_id: str, pref: ModelPreference) -> None:
        self.prefs[chat_id] = pref
        self.save()

    def select(self, content: str, chat_id: str) -> ModelSelection:
        return resolve_model_selection(content, chat_id, self.prefs)


def is_model_command(content: str) -> bool:
    return bool(_COMMAND_RE.match(content))


def format_preference(pref: ModelPreference | None) -> str:
    if pref is None or pref.mode == "auto":
        return "auto (content-based)"
    if pref.mode == "custom":
        effort = f", reasoning {pref.reasoning_effort}" if pref.reasoning_effort else ""
        return f"custom: {pref.model}{effort}"
    return pref.mode


def model_help() -> str:
    code, chat, write = (DEFAULT_MODELS[k] for k in ("code", "chat", "write"))
    return "\n".join(
        [
            "Model control:",
            "- `model auto` (default: detect code/chat/write)",
            f"- `model code` → {code[0]} (reasoning {code[1]})",
            f"- `model chat` → {chat[0]}",
            f"- `model write` → {write[0]} (reasoning {write[1]})",
            "- `model <name> [low|medium|high]` (custom)",
            "- `model status` (show current)",
        ]
    )


def handle_model_command(
    content: str, chat_id: str, prefs: ModelPreferences
) -> str | None:
    """Apply a ``model …`` command and return the reply text.

    Returns ``None`` when *content* is not a model command.
    """
    if not is_model_command(content):
        return None

    rest = re.sub(r"^model\s*:?", "", content, flags=re.IGNORECASE)
    rest = re.sub(r"^(use|set|switch)\s+model\s*", "", rest, flags=re.IGNORECASE)
    rest = re.sub(r"^use\s+", "", rest, flags=re.IGNORECASE)
    tokens = rest.split()

    if not tokens or tokens[0].lower() in ("status", "help"):
        return f"{model_help()}\n\nCurrent: {format_preference(prefs.get(chat_id))}"

    first = tokens[0].lower()
    if first in _MODE_ALIASES:
        mode = _MODE_ALIASES[first]
        prefs.set(chat_id, ModelPreference(mode=mode))
        return f"Model mode set to {mode}."

    effort: ReasoningEffort | None = None
    for token in tokens[1:]:
        normalized = token.lower().replace("reasoning=", "")
        if normalized in ("low", "medium", "high"):
            effort = normalized  # type: ignore[assignment]

    prefs.set(
        chat_id,
        ModelPreference(mode="custom", model=tokens[0], reasoning_effort=effort),
    )
    effort_text = f" with reasoning {effort}" if effort else ""
    return f"Model set to {tokens[0]}{effort_text}."
