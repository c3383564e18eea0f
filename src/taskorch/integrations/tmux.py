"""Thin wrapper around the ``tmux`` binary, the session host for workers.

Every call is bounded by a timeout. A timeout or an unexpected non-zero
exit becomes :class:`TransientExternalFailure`; a missing binary becomes
:class:`HostUnavailable`.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
import subprocess
from typing import Dict, List, Optional

from taskorch.core.errors import HostUnavailable, TransientExternalFailure
from taskorch.core.sessions import Session

logger = logging.getLogger("taskorch.tmux")

_SESSION_FORMAT = "#{session_name}\t#{session_created}\t#{session_attached}"
_PANE_FORMAT = "#{session_name}\t#{pane_dead}"
_NO_SERVER_HINTS = ("no server running", "error connecting to", "no sessions")


def _pane(name: str) -> str:
    # exact session match, its active window/pane
    return f"={name}:"


class SessionExists(TransientExternalFailure):
    """create_session found a session with that name already running."""


class TmuxHost:
    def __init__(self, timeout: float = 10.0, tmux_bin: str = "tmux") -> None:
        self.timeout = timeout
        self.tmux_bin = tmux_bin

    def _run(self, args: List[str], *, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.tmux_bin, *args]
        try:
            cp = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise HostUnavailable(f"{self.tmux_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientExternalFailure(
                f"tmux {args[0]} timed out after {self.timeout}s"
            ) from exc
        if check and cp.returncode != 0:
            raise TransientExternalFailure(
                f"tmux {args[0]} failed (exit {cp.returncode}): {(cp.stderr or '').strip()}"
            )
        return cp

    # ── queries ───────────────────────────────────────────────

    def list_sessions(self) -> List[Session]:
        cp = self._run(["list-sessions", "-F", _SESSION_FORMAT], check=False)
        if cp.returncode != 0:
            stderr = (cp.stderr or "").lower()
            if any(hint in stderr for hint in _NO_SERVER_HINTS):
                return []
            raise TransientExternalFailure(f"tmux list-sessions failed: {stderr.strip()}")

        dead = self._dead_sessions()
        sessions: List[Session] = []
        for line in (cp.stdout or "").splitlines():
            parts = line.split("\t")
            if len(parts) != 3 or not parts[0]:
                continue
            name, created, attached = parts
            try:
                created_at = datetime.fromtimestamp(int(created), tz=timezone.utc)
            except ValueError:
                created_at = None
            sessions.append(Session(
                name=name,
                created_at=created_at,
                attached=int(attached) if attached.isdigit() else 0,
                alive=not dead.get(name, False),
            ))
        return sessions

    def _dead_sessions(self) -> Dict[str, bool]:
        """Map session name to True when every pane in it has exited."""
        cp = self._run(["list-panes", "-a", "-F", _PANE_FORMAT], check=False)
        if cp.returncode != 0:
            return {}
        panes: Dict[str, List[bool]] = {}
        for line in (cp.stdout or "").splitlines():
            name, _, dead = line.partition("\t")
            panes.setdefault(name, []).append(dead.strip() == "1")
        return {name: all(flags) for name, flags in panes.items()}

    def has_session(self, name: str) -> bool:
        cp = self._run(["has-session", "-t", f"={name}"], check=False)
        return cp.returncode == 0

    def attached_clients(self, name: str) -> int:
        cp = self._run(["display-message", "-p", "-t", _pane(name), "#{session_attached}"])
        value = (cp.stdout or "").strip()
        return int(value) if value.isdigit() else 0

    def capture(self, name: str, lines: int = 200) -> str:
        cp = self._run(["capture-pane", "-p", "-J", "-t", _pane(name), "-S", f"-{lines}"])
        return cp.stdout or ""

    # ── actions ───────────────────────────────────────────────

    def create_session(
        self,
        name: str,
        start_dir: str,
        command: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        args = ["new-session", "-d", "-s", name, "-c", start_dir]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        if command:
            args.append(command)
        cp = self._run(args, check=False)
        if cp.returncode != 0:
            stderr = (cp.stderr or "").strip()
            if "duplicate session" in stderr:
                raise SessionExists(f"session {name} already exists")
            raise TransientExternalFailure(f"tmux new-session {name} failed: {stderr}")
        logger.info("Created tmux session %s (cwd=%s)", name, start_dir)

    def send_literal(self, name: str, text: str) -> None:
        """Paste *text* into the session verbatim (newlines do not submit)."""
        buffer = f"orch-{name}"
        self._run(["set-buffer", "-b", buffer, "--", text])
        self._run(["paste-buffer", "-p", "-d", "-b", buffer, "-t", _pane(name)])

    def send_enter(self, name: str) -> None:
        self._run(["send-keys", "-t", _pane(name), "Enter"])

    def kill_session(self, name: str) -> None:
        cp = self._run(["kill-session", "-t", f"={name}"], check=False)
        if cp.returncode != 0:
            stderr = (cp.stderr or "").lower()
            if "can't find session" in stderr or any(h in stderr for h in _NO_SERVER_HINTS):
                return
            raise TransientExternalFailure(f"tmux kill-session {name} failed: {stderr.strip()}")
        logger.info("Killed tmux session %s", name)

    def attach(self, name: str) -> None:
        """Replace this process with a tmux client attached to *name*."""
        action = "switch-client" if os.getenv("TMUX") else "attach-session"
        os.execvp(self.tmux_bin, [self.tmux_bin, action, "-t", f"={name}"])
