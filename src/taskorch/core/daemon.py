"""Wiring: builds the engine from Settings and runs the long-lived daemon."""
from __future__ import annotations

import logging
import os
import signal
import threading
from typing import Optional

from taskorch.core.assessor import StatusAssessor
from taskorch.core.coalescer import TriggerCoalescer
from taskorch.core.config import Settings
from taskorch.core.errors import StoreUnavailable, TaskNotFound, TransientExternalFailure
from taskorch.core.inbox import KIND_SCAN, SOURCE_OPERATOR, InboxMessage, InboxQueue
from taskorch.core.logging_config import log_action
from taskorch.core.reconciler import Reconciler
from taskorch.core.sessions import SessionRegistry
from taskorch.core.taskfile import Task
from taskorch.core.tasks import TaskStore
from taskorch.core.templates import worker_prompt
from taskorch.core.watcher import TaskWatcher, Ticker
from taskorch.core.worker import WorkerSupervisor
from taskorch.integrations.tmux import TmuxHost

logger = logging.getLogger("taskorch.daemon")


class Orchestrator:
    """All engine components for one task directory.

    The CLI, the HTTP gateway and the daemon loop share this object; tests
    build one with a fake session host.
    """

    def __init__(self, settings: Settings, host=None) -> None:
        self.settings = settings
        self.host = host or TmuxHost(timeout=settings.host_timeout)
        self.store = TaskStore(
            settings.tasks_dir,
            locks_dir=settings.locks_dir,
            closed_dir=settings.closed_dir,
            lock_timeout=settings.lock_timeout,
        )
        self.registry = SessionRegistry(self.host)
        self.inbox = InboxQueue(settings.inbox_dir)
        self.supervisor = WorkerSupervisor(
            self.host,
            agent_cmd=settings.agent_cmd,
            session_prefix=settings.session_prefix,
            prompt_delay=settings.prompt_delay,
        )
        self.assessor = StatusAssessor(self.registry, self.inbox, max_workers=settings.max_workers)
        self.reconciler = Reconciler(
            self.store,
            self.registry,
            self.inbox,
            self.supervisor,
            self.assessor,
            max_workers=settings.max_workers,
            max_spawn_attempts=settings.max_spawn_attempts,
            fs_timeout=settings.fs_timeout,
            claim_timeout=settings.claim_timeout,
            prompt_builder=self.build_prompt,
        )
        self.coalescer = TriggerCoalescer(
            self.reconciler.run_full,
            self.reconciler.run_single,
            debounce_seconds=settings.debounce_seconds,
            max_workers=settings.max_workers,
            is_echo=self.store.is_own_write,
        )

    def build_prompt(self, task: Task) -> str:
        return worker_prompt(task, orch_cmd="orch", prompt_file=self.settings.prompt_file)

    # ── operator actions ──────────────────────────────────────

    def send(self, task_id: str, body: str, source: str = SOURCE_OPERATOR) -> InboxMessage:
        if not os.path.isfile(self.store.path_for(task_id)):
            raise TaskNotFound(task_id)
        return self.inbox.enqueue(task_id, body, source)

    def request_scan(self, task_id: Optional[str] = None) -> None:
        """Trigger a pass: directly when the coalescer runs here, else via the inbox."""
        if self.coalescer.running:
            self.coalescer.manual(task_id)
        else:
            self.inbox.request_scan(task_id)

    def close_task(self, task_id: str, reason: str = "closed by operator", keep_session: bool = False) -> Task:
        task = self.store.close(task_id, reason)
        self.assessor.forget(task_id)
        if task.session and not keep_session:
            try:
                self.supervisor.terminate(task.session)
            except TransientExternalFailure as exc:
                logger.warning("Could not terminate %s: %s", task.session, exc)
                log_action(task_id, "terminate", task.session, error=str(exc))
        return task

    def close(self) -> None:
        self.coalescer.stop()
        self.reconciler.close()


def _start_http(orch: Orchestrator):
    import uvicorn

    from taskorch.core.gateway import create_app

    config = uvicorn.Config(
        create_app(orch),
        host=orch.settings.http_host,
        port=orch.settings.http_port,
        log_level=orch.settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True, name="orch-http")
    thread.start()
    logger.info("HTTP intake on http://%s:%d", orch.settings.http_host, orch.settings.http_port)
    return server, thread


def run_daemon(
    settings: Settings,
    *,
    http: bool = False,
    host=None,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """Run watcher + ticker + coalescer until signalled. Returns the exit code."""
    orch = Orchestrator(settings, host)
    try:
        orch.store.task_ids()
    except StoreUnavailable as exc:
        logger.error("%s", exc)
        return 1

    # scan requests queued while no daemon was running are covered by the initial scan
    for msg in list(orch.inbox.poll(kind=KIND_SCAN)):
        orch.inbox.ack(msg.key)

    stop_event = stop_event or threading.Event()
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda *_: stop_event.set())

    watcher = TaskWatcher(settings.tasks_dir, orch.inbox, orch.coalescer)
    ticker = Ticker(orch.coalescer.tick, interval=settings.tick_seconds, cron=settings.tick_cron)
    server = None

    orch.coalescer.start()
    watcher.start()
    ticker.start()
    if http:
        server, _ = _start_http(orch)
    logger.info("Daemon started for %s", settings.tasks_dir)

    orch.coalescer.tick()
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        logger.info("Daemon stopping")
        if server is not None:
            server.should_exit = True
        ticker.stop()
        watcher.stop()
        orch.close()
    return 0
