import re
import sys
from pathlib import Path

from pydantic_settings import BaseSettings


def _default_sandbox_command() -> list[str]:
    return [sys.executable, "-m", "pykobridge.runner"]


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "PYKOBRIDGE_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "pykobridge" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "pykobridge"
    review_model: str = "claude-opus-4-6"
    assistant_name: str = "Andy"
    main_folder: str = "main"
    timezone: str = "UTC"
    log_level: str = "INFO"

    poll_interval: float = 2.0  # seconds between message loop polls
    scheduler_poll_interval: float = 60.0
    ipc_poll_interval: float = 1.0

    agent_timeout: float = 600.0  # seconds
    max_output_bytes: int = 1_000_000
    max_stderr_chars: int = 20_000
    sandbox_command: list[str] = _default_sandbox_command()

    recent_messages: int = 40
    retrieval_limit: int = 8
    retrieval_max_chars: int = 320
    journal_max_chars: int = 1200
    duplicate_window: float = 5.0  # seconds

    telegram_bot_token: str | None = None
    telegram_owner_id: str | None = None

    @property
    def db_path(self) -> Path:
        return self.data / "pykobridge.db"

    @property
    def ipc_dir(self) -> Path:
        return self.data / "ipc"

    @property
    def groups_dir(self) -> Path:
        return self.data / "groups"

    @property
    def notes_dir(self) -> Path:
        return self.data / "notes"

    @property
    def model_prefs_path(self) -> Path:
        return self.data / "model_prefs.json"

    @property
    def lock_path(self) -> Path:
        return self.data / "pykobridge.lock"

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        return re.compile(rf"^@{re.escape(self.assistant_name)}\b", re.IGNORECASE)


settings = Settings()
