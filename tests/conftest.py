"""Shared fixtures: an in-memory session host and a temporary task directory."""
from __future__ import annotations

from datetime import datetime, timezone
import os
import threading
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from taskorch.core.config import Settings
from taskorch.core.daemon import Orchestrator
from taskorch.core.errors import TransientExternalFailure
from taskorch.core.sessions import Session
from taskorch.integrations.tmux import SessionExists


class FakeHost:
    """Stands in for TmuxHost. Sessions live in a dict."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        self.panes: Dict[str, str] = {}
        self.created: List[str] = []
        self.killed: List[str] = []
        self.sent: List[Tuple[str, str]] = []
        self.enters: List[str] = []
        self.attached_to: Optional[str] = None
        self.fail_list: Optional[Exception] = None
        self.fail_create: Optional[Exception] = None
        self.create_gate: Optional[threading.Event] = None
        self.create_started = threading.Event()
        self.on_create: Optional[Callable[[str], None]] = None
        self._lock = threading.Lock()

    # helpers for tests
    def add(self, name: str, attached: int = 0, alive: bool = True) -> None:
        self.sessions[name] = Session(name=name, created_at=datetime.now(timezone.utc),
                                      attached=attached, alive=alive)

    def drop(self, name: str) -> None:
        self.sessions.pop(name, None)

    # host interface
    def list_sessions(self) -> List[Session]:
        if self.fail_list is not None:
            raise self.fail_list
        with self._lock:
            return list(self.sessions.values())

    def has_session(self, name: str) -> bool:
        return name in self.sessions

    def attached_clients(self, name: str) -> int:
        session = self.sessions.get(name)
        if session is None:
            raise TransientExternalFailure(f"no session {name}")
        return session.attached

    def capture(self, name: str, lines: int = 200) -> str:
        return self.panes.get(name, "")

    def create_session(self, name, start_dir, command=None, env=None) -> None:
        self.create_started.set()
        if self.create_gate is not None:
            self.create_gate.wait(5)
        if self.fail_create is not None:
            raise self.fail_create
        with self._lock:
            if name in self.sessions:
                raise SessionExists(f"session {name} already exists")
            self.add(name)
            self.created.append(name)
        if self.on_create is not None:
            self.on_create(name)

    def send_literal(self, name: str, text: str) -> None:
        self.sent.append((name, text))

    def send_enter(self, name: str) -> None:
        self.enters.append(name)

    def kill_session(self, name: str) -> None:
        with self._lock:
            self.sessions.pop(name, None)
        self.killed.append(name)

    def attach(self, name: str) -> None:
        self.attached_to = name


def make_settings(root: str, **overrides) -> Settings:
    tasks_dir = os.path.join(root, "tasks")
    state_dir = os.path.join(tasks_dir, ".orch")
    values = dict(
        log_level="info",
        log_dir=os.path.join(state_dir, "logs"),
        tasks_dir=tasks_dir,
        state_dir=state_dir,
        tick_seconds=300,
        tick_cron=None,
        debounce_seconds=0.05,
        host_timeout=5,
        fs_timeout=5,
        lock_timeout=0.5,
        claim_timeout=5,
        max_workers=4,
        max_spawn_attempts=3,
        agent_cmd="agent",
        session_prefix="task-",
        prompt_file=None,
        prompt_delay=0,
        http_host="127.0.0.1",
        http_port=18791,
        http_token=None,
        clear_logs_on_launch=False,
    )
    values.update(overrides)
    os.makedirs(tasks_dir, exist_ok=True)
    return Settings(**values)


def write_task(tasks_dir: str, task_id: str, text: str) -> str:
    path = os.path.join(tasks_dir, f"{task_id}.md")
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    return path


def read_file(path: str) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def settings(tmp_path):
    return make_settings(str(tmp_path))


@pytest.fixture
def orch(settings, host):
    o = Orchestrator(settings, host=host)
    yield o
    o.close()


@pytest.fixture
def tasks_dir(settings):
    return settings.tasks_dir
