"""Status Assessor: turns a glance at a worker's pane into inbox messages.

Read-only with respect to tasks. The only side effect is enqueuing an
``assessor`` message, and only when the observation for a task differs
from the previous one.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from taskorch.core.errors import OrchError
from taskorch.core.inbox import InboxMessage, InboxQueue

logger = logging.getLogger("taskorch.assessor")

# Prompts an agent CLI shows when it is blocked on a human answer.
_PROMPT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"do you want to",
        r"\(y/n\)",
        r"\[y/n\]",
        r"press enter to continue",
        r"waiting for (your )?(input|approval|confirmation)",
        r"^\s*[❯>]\s*1\.\s*yes\b",
    )
]
_PROMPT_WINDOW = 8
_MAX_LINE = 200


def classify(pane: str) -> Optional[str]:
    """Reduce captured pane text to a one-line observation, or None."""
    lines = [line.rstrip() for line in pane.splitlines() if line.strip()]
    if not lines:
        return None
    for line in reversed(lines[-_PROMPT_WINDOW:]):
        if any(p.search(line) for p in _PROMPT_PATTERNS):
            return f"needs-input: worker is waiting at a prompt: {line.strip()[:_MAX_LINE]}"
    return f"progress: {lines[-1].strip()[:_MAX_LINE]}"


class StatusAssessor:
    def __init__(self, registry, inbox: InboxQueue, *, max_workers: int = 4, lines: int = 60) -> None:
        self.registry = registry
        self.inbox = inbox
        self.max_workers = max(1, max_workers)
        self.lines = lines
        self._lock = threading.Lock()
        self._last: Dict[str, str] = {}

    def assess_one(self, task_id: str, session_name: str) -> Optional[InboxMessage]:
        """Observe one session; enqueue and return a message if it changed."""
        try:
            pane = self.registry.capture(session_name, self.lines)
        except OrchError as exc:
            logger.debug("Could not capture %s: %s", session_name, exc)
            return None
        body = classify(pane)
        if body is None:
            return None
        with self._lock:
            if self._last.get(task_id) == body:
                return None
            self._last[task_id] = body
        return self.inbox.observe(task_id, body)

    def assess(self, targets: Iterable[Tuple[str, str]]) -> List[InboxMessage]:
        """Observe many ``(task_id, session_name)`` pairs concurrently."""
        targets = list(targets)
        if not targets:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            results = list(pool.map(lambda t: self.assess_one(*t), targets))
        return [msg for msg in results if msg is not None]

    def forget(self, task_id: str) -> None:
        with self._lock:
            self._last.pop(task_id, None)
