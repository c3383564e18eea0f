"""Session Registry: the live worker sessions as seen on the session host.

Sessions are rediscovered on every pass and never persisted on their own;
the only durable record of a session is the binding in its task file.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Dict, Optional

logger = logging.getLogger("taskorch.sessions")


@dataclass(frozen=True)
class Session:
    name: str
    created_at: Optional[datetime] = None
    attached: int = 0
    alive: bool = True

    @property
    def is_attached(self) -> bool:
        return self.attached > 0


class SessionRegistry:
    """Read-only view over a session host (``TmuxHost`` or a test fake).

    Host failures propagate: ``TransientExternalFailure`` when a query
    fails or times out, ``HostUnavailable`` when the host is missing.
    """

    def __init__(self, host) -> None:
        self.host = host

    def list_live(self) -> Dict[str, Session]:
        sessions = {s.name: s for s in self.host.list_sessions()}
        logger.debug("Session host reports %d session(s)", len(sessions))
        return sessions

    def get(self, name: str) -> Optional[Session]:
        return self.list_live().get(name)

    def is_attached(self, name: str) -> bool:
        return self.host.attached_clients(name) > 0

    def capture(self, name: str, lines: int = 200) -> str:
        return self.host.capture(name, lines)
