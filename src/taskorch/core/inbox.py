"""Inbox Queue: durable, at-least-once message spool.

Every message is one JSON file under the inbox directory, named
``<sent_at_ns>-<key>.json`` so that a lexical listing is arrival order.
A message stays on disk until it is acked; a crash between applying a
message and acking it simply redelivers it, and the reconciler recognizes
the redelivery by its key.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
import os
import time
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger("taskorch.inbox")

SOURCE_WORKER = "worker"
SOURCE_OPERATOR = "operator"
SOURCE_ASSESSOR = "assessor"
SOURCES = (SOURCE_WORKER, SOURCE_OPERATOR, SOURCE_ASSESSOR)

KIND_MESSAGE = "message"
KIND_SCAN = "scan"


def message_key(task_id: str, source: str, body: str, sent_at: str) -> str:
    digest = hashlib.sha256("\0".join((task_id, source, body, sent_at)).encode("utf-8"))
    return digest.hexdigest()[:16]


def observation_key(task_id: str, body: str) -> str:
    """Content-only key: an unchanged observation always maps to the same key."""
    digest = hashlib.sha256("\0".join((task_id, SOURCE_ASSESSOR, body)).encode("utf-8"))
    return digest.hexdigest()[:16]


@dataclass
class InboxMessage:
    task_id: str
    body: str
    source: str
    sent_at: datetime
    kind: str = KIND_MESSAGE
    key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "body": self.body,
            "source": self.source,
            "sent_at": self.sent_at.isoformat(),
            "kind": self.kind,
            "key": self.key,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "InboxMessage":
        sent_at = datetime.fromisoformat(data["sent_at"])
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)
        return InboxMessage(
            task_id=data.get("task_id") or "",
            body=data.get("body", ""),
            source=data.get("source", SOURCE_OPERATOR),
            sent_at=sent_at,
            kind=data.get("kind", KIND_MESSAGE),
            key=data["key"],
        )


class InboxQueue:
    def __init__(self, inbox_dir: str) -> None:
        self.inbox_dir = inbox_dir

    # ── writing ───────────────────────────────────────────────

    def enqueue(
        self,
        task_id: str,
        body: str,
        source: str = SOURCE_OPERATOR,
        *,
        kind: str = KIND_MESSAGE,
        key: Optional[str] = None,
    ) -> InboxMessage:
        if source not in SOURCES:
            raise ValueError(f"unknown message source {source!r}")
        now_ns = time.time_ns()
        sent_at = datetime.fromtimestamp(now_ns / 1e9, tz=timezone.utc)
        msg = InboxMessage(
            task_id=task_id,
            body=body,
            source=source,
            sent_at=sent_at,
            kind=kind,
            key=key or message_key(task_id, source, body, sent_at.isoformat()),
        )
        os.makedirs(self.inbox_dir, exist_ok=True)
        name = f"{now_ns:020d}-{msg.key}.json"
        tmp = os.path.join(self.inbox_dir, f".{name}.tmp")
        with open(tmp, "w", encoding="utf-8") as handle:
            json.dump(msg.to_dict(), handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, os.path.join(self.inbox_dir, name))
        logger.debug("Enqueued %s %s for %s (key=%s)", source, kind, task_id or "*", msg.key)
        return msg

    def observe(self, task_id: str, body: str) -> InboxMessage:
        """Enqueue a status observation keyed on its content."""
        return self.enqueue(task_id, body, SOURCE_ASSESSOR, key=observation_key(task_id, body))

    def request_scan(self, task_id: Optional[str] = None) -> InboxMessage:
        """Ask a running daemon to reconcile one task, or everything."""
        return self.enqueue(task_id or "", "scan", SOURCE_OPERATOR, kind=KIND_SCAN)

    # ── reading ───────────────────────────────────────────────

    def _names(self) -> list[str]:
        try:
            names = os.listdir(self.inbox_dir)
        except FileNotFoundError:
            return []
        return sorted(n for n in names if n.endswith(".json") and not n.startswith("."))

    def read(self, path: str) -> Optional[InboxMessage]:
        """Load one spool file; None (with a warning) if it cannot be parsed."""
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return InboxMessage.from_dict(json.load(handle))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Skipping unreadable inbox file %s: %s", path, exc)
            return None

    def poll(self, task_id: Optional[str] = None, kind: str = KIND_MESSAGE) -> Iterator[InboxMessage]:
        """Yield unacked messages oldest first, optionally for one task."""
        for name in self._names():
            msg = self.read(os.path.join(self.inbox_dir, name))
            if msg is None or msg.kind != kind:
                continue
            if task_id is not None and msg.task_id != task_id:
                continue
            yield msg

    def pending_count(self, task_id: Optional[str] = None) -> int:
        return sum(1 for _ in self.poll(task_id))

    def ack(self, key: str) -> int:
        """Remove every spool file carrying *key*. Returns how many were removed."""
        removed = 0
        suffix = f"-{key}.json"
        for name in self._names():
            if not name.endswith(suffix):
                continue
            try:
                os.remove(os.path.join(self.inbox_dir, name))
                removed += 1
            except FileNotFoundError:
                continue
        return removed
