"""Worker Supervisor: creates, feeds and terminates worker sessions.

A thin actuator over the session host. It never decides *whether* to act;
the reconciler does that and calls in here with the outcome.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import time
from typing import Callable, Optional

from taskorch.core.errors import TransientExternalFailure
from taskorch.core.logging_config import log_action
from taskorch.integrations.tmux import SessionExists

logger = logging.getLogger("taskorch.worker")


@dataclass
class SpawnResult:
    name: str
    adopted: bool = False
    prompt_delivered: bool = False


class WorkerSupervisor:
    def __init__(
        self,
        host,
        *,
        agent_cmd: str = "claude",
        session_prefix: str = "task-",
        prompt_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.agent_cmd = agent_cmd
        self.session_prefix = session_prefix
        self.prompt_delay = prompt_delay
        self._sleep = sleep

    def session_name(self, task_id: str) -> str:
        return f"{self.session_prefix}{task_id}"

    def task_id_for(self, session_name: str) -> Optional[str]:
        if session_name.startswith(self.session_prefix):
            return session_name[len(self.session_prefix):] or None
        return None

    def spawn(self, task_id: str, prompt: str, start_dir: Optional[str] = None) -> SpawnResult:
        """Start a worker session for *task_id* and deliver its prompt.

        If a session with the task's name already exists (a previous spawn
        that looked like a failure, or one started by hand) it is adopted
        and nothing is pasted into it. Host failures propagate.
        """
        name = self.session_name(task_id)
        cwd = os.path.expanduser(start_dir) if start_dir else os.path.expanduser("~")
        if not os.path.isdir(cwd):
            logger.warning("Workspace %s for %s does not exist; starting in home", cwd, task_id)
            cwd = os.path.expanduser("~")

        try:
            self.host.create_session(
                name,
                cwd,
                command=self.agent_cmd,
                env={"TASKORCH_TASK_ID": task_id},
            )
        except SessionExists:
            logger.info("Session %s already exists; adopting it", name)
            log_action(task_id, "adopt", name)
            return SpawnResult(name=name, adopted=True)

        log_action(task_id, "spawn", f"{name} cwd={cwd} cmd={self.agent_cmd}")
        result = SpawnResult(name=name)
        if self.prompt_delay > 0:
            self._sleep(self.prompt_delay)
        try:
            result.prompt_delivered = self.send_literal(name, prompt)
        except TransientExternalFailure as exc:
            logger.warning("Prompt delivery to %s failed: %s", name, exc)
            log_action(task_id, "prompt", name, error=str(exc))
        return result

    def send_literal(self, name: str, text: str) -> bool:
        """Type *text* into the session and press Enter.

        Returns False without sending anything when a human client is
        attached to the session.
        """
        if self.host.attached_clients(name) > 0:
            logger.info("Not sending to %s: a client is attached", name)
            return False
        self.host.send_literal(name, text)
        self.host.send_enter(name)
        return True

    def terminate(self, name: str) -> None:
        self.host.kill_session(name)
        task_id = self.task_id_for(name) or ""
        log_action(task_id, "terminate", name)
