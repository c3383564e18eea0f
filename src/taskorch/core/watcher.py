"""Trigger sources for the daemon: filesystem events and the periodic tick.

``TaskWatcher`` observes the task directory (file changes become
single-task requests) and the inbox spool (new messages become single-task
requests, scan requests become manual triggers). ``Ticker`` fires a full
scan on a fixed interval or on a cron schedule.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
import threading
from typing import Callable, Optional

from croniter import croniter
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from taskorch.core.coalescer import TriggerCoalescer
from taskorch.core.inbox import KIND_SCAN, SOURCE_ASSESSOR, InboxQueue

logger = logging.getLogger("taskorch.watcher")


class TaskDirHandler(FileSystemEventHandler):
    def __init__(self, coalescer: TriggerCoalescer) -> None:
        self.coalescer = coalescer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path:
                self.coalescer.file_changed(os.fsdecode(path))


class InboxHandler(FileSystemEventHandler):
    def __init__(self, inbox: InboxQueue, coalescer: TriggerCoalescer) -> None:
        self.inbox = inbox
        self.coalescer = coalescer

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.dispatch_path(os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        # spool files are written to a temp name and renamed into place
        if not event.is_directory:
            self.dispatch_path(os.fsdecode(event.dest_path))

    def dispatch_path(self, path: str) -> None:
        name = os.path.basename(path)
        if name.startswith(".") or not name.endswith(".json"):
            return
        msg = self.inbox.read(path)
        if msg is None:
            return
        if msg.kind == KIND_SCAN:
            self.inbox.ack(msg.key)
            logger.info("Scan requested for %s", msg.task_id or "all tasks")
            self.coalescer.manual(msg.task_id or None)
        elif msg.source != SOURCE_ASSESSOR:
            # observations are consumed by the full scan that wrote them
            self.coalescer.inbox_arrival(msg.task_id or None)


class TaskWatcher:
    def __init__(self, tasks_dir: str, inbox: InboxQueue, coalescer: TriggerCoalescer) -> None:
        self.tasks_dir = tasks_dir
        self.inbox = inbox
        self.coalescer = coalescer
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        os.makedirs(self.inbox.inbox_dir, exist_ok=True)
        observer = Observer()
        observer.schedule(TaskDirHandler(self.coalescer), self.tasks_dir, recursive=False)
        observer.schedule(InboxHandler(self.inbox, self.coalescer), self.inbox.inbox_dir, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s and %s", self.tasks_dir, self.inbox.inbox_dir)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None


class Ticker:
    """Calls *on_tick* every *interval* seconds, or on a cron schedule."""

    def __init__(
        self,
        on_tick: Callable[[], None],
        *,
        interval: float = 300,
        cron: Optional[str] = None,
    ) -> None:
        if cron and not croniter.is_valid(cron):
            raise ValueError(f"invalid cron expression: {cron!r}")
        self.on_tick = on_tick
        self.interval = max(1.0, float(interval))
        self.cron = cron
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def next_delay(self, now: Optional[datetime] = None) -> float:
        if not self.cron:
            return self.interval
        now = now or datetime.now(timezone.utc)
        nxt = croniter(self.cron, now).get_next(datetime)
        return max(1.0, (nxt - now).total_seconds())

    def _loop(self) -> None:
        while not self._stop.wait(self.next_delay()):
            try:
                self.on_tick()
            except Exception:  # noqa: BLE001
                logger.exception("Tick handler failed")

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="orch-ticker")
        self._thread.start()
        logger.info("Ticker started (%s)", f"cron={self.cron}" if self.cron else f"every {self.interval:.0f}s")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
