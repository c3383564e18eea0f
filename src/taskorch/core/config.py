from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(f"TASKORCH_{name}")
    if value is None or value == "":
        return default
    return value


@dataclass
class Settings:
    log_level: str
    log_dir: str
    tasks_dir: str
    state_dir: str
    tick_seconds: int
    tick_cron: str | None
    debounce_seconds: float
    host_timeout: float
    fs_timeout: float
    lock_timeout: float
    claim_timeout: float
    max_workers: int
    max_spawn_attempts: int
    agent_cmd: str
    session_prefix: str
    prompt_file: str | None
    prompt_delay: float
    http_host: str
    http_port: int
    http_token: str | None
    clear_logs_on_launch: bool

    @property
    def inbox_dir(self) -> str:
        return os.path.join(self.state_dir, "inbox")

    @property
    def locks_dir(self) -> str:
        return os.path.join(self.state_dir, "locks")

    @property
    def closed_dir(self) -> str:
        return os.path.join(self.state_dir, "closed")

    @staticmethod
    def from_env() -> "Settings":
        default_tasks = str(Path(os.path.expanduser("~")) / "tasks")
        tasks_dir = os.path.expanduser(_env("TASKS_DIR", default_tasks) or default_tasks)
        state_dir = os.path.expanduser(_env("STATE_DIR") or os.path.join(tasks_dir, ".orch"))
        log_dir = os.path.expanduser(_env("LOG_DIR") or os.path.join(state_dir, "logs"))
        return Settings(
            log_level=_env("LOG_LEVEL", "info") or "info",
            log_dir=log_dir,
            tasks_dir=tasks_dir,
            state_dir=state_dir,
            tick_seconds=int(_env("TICK_SECONDS", "300") or 300),
            tick_cron=_env("TICK_CRON"),
            debounce_seconds=float(_env("DEBOUNCE_SECONDS", "0.5") or 0.5),
            host_timeout=float(_env("HOST_TIMEOUT", "10") or 10),
            fs_timeout=float(_env("FS_TIMEOUT", "10") or 10),
            lock_timeout=float(_env("LOCK_TIMEOUT", "5") or 5),
            claim_timeout=float(_env("CLAIM_TIMEOUT", "60") or 60),
            max_workers=int(_env("MAX_WORKERS", "4") or 4),
            max_spawn_attempts=int(_env("MAX_SPAWN_ATTEMPTS", "5") or 5),
            agent_cmd=_env("AGENT_CMD", "claude") or "claude",
            session_prefix=_env("SESSION_PREFIX", "task-") or "task-",
            prompt_file=_env("PROMPT_FILE"),
            prompt_delay=float(_env("PROMPT_DELAY", "2.0") or 2.0),
            http_host=_env("HTTP_HOST", "127.0.0.1") or "127.0.0.1",
            http_port=int(_env("HTTP_PORT", "18791") or 18791),
            http_token=_env("HTTP_TOKEN"),
            clear_logs_on_launch=(_env("CLEAR_LOGS_ON_LAUNCH", "false") or "false").lower() in _TRUTHY,
        )
