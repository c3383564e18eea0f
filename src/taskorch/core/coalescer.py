"""Trigger Coalescer: turns raw events into reconciliation requests.

Events (file changes, ticks, inbox arrivals, manual commands) become either
a :class:`FullScan` or a :class:`SingleTask` request.

* Bursts of file events for one path inside the debounce window become a
  single request. When the window closes on a file that still holds the
  engine's own last write (``is_echo``), no request is made.
* Full scans never overlap. Requests that arrive while one runs collapse
  into exactly one follow-up scan.
* Single-task requests are never dropped. They run on a bounded pool next
  to a running full scan; a request for a task that is already running is
  queued behind it, and duplicate queued requests run once.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Set, Union

from taskorch.core.tasks import TaskStore

logger = logging.getLogger("taskorch.coalescer")


@dataclass(frozen=True)
class FullScan:
    pass


@dataclass(frozen=True)
class SingleTask:
    task_id: str


Request = Union[FullScan, SingleTask]


class TriggerCoalescer:
    def __init__(
        self,
        run_full: Callable[[], Any],
        run_single: Callable[[str], Any],
        *,
        debounce_seconds: float = 0.5,
        max_workers: int = 4,
        task_id_for: Callable[[str], Optional[str]] = TaskStore.task_id_for,
        is_echo: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._run_full_fn = run_full
        self._run_single_fn = run_single
        self.debounce_seconds = debounce_seconds
        self.max_workers = max(1, max_workers)
        self._task_id_for = task_id_for
        self._is_echo = is_echo

        self._cond = threading.Condition()
        self._timers: Dict[str, threading.Timer] = {}
        self._full_running = False
        self._full_pending = False
        self._pending: Set[str] = set()
        self._running: Set[str] = set()
        self._followup: Set[str] = set()
        self._scan_pool: Optional[ThreadPoolExecutor] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._accepting = False

    # ── lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        with self._cond:
            if self._accepting:
                return
            self._scan_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="orch-scan")
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="orch-task")
            self._accepting = True
        logger.info("Trigger coalescer started (debounce=%.2fs, workers=%d)",
                    self.debounce_seconds, self.max_workers)

    def stop(self, wait: bool = True) -> None:
        with self._cond:
            self._accepting = False
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._full_pending = False
            self._followup.clear()
            scan_pool, pool = self._scan_pool, self._pool
        if scan_pool is not None:
            scan_pool.shutdown(wait=wait)
        if pool is not None:
            pool.shutdown(wait=wait)
        with self._cond:
            self._cond.notify_all()
        logger.info("Trigger coalescer stopped")

    @property
    def running(self) -> bool:
        return self._accepting

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is debouncing, queued or running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._is_idle():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def _is_idle(self) -> bool:
        return not (
            self._timers or self._full_running or self._full_pending
            or self._pending or self._running or self._followup
        )

    # ── inputs ────────────────────────────────────────────────

    def file_changed(self, path: str) -> None:
        task_id = self._task_id_for(path)
        if task_id is None:
            return
        with self._cond:
            if not self._accepting or path in self._timers:
                return
            timer = threading.Timer(self.debounce_seconds, self._debounced, args=(path, task_id))
            timer.daemon = True
            self._timers[path] = timer
        timer.start()

    def _debounced(self, path: str, task_id: str) -> None:
        echo = self._is_echo is not None and self._is_echo(path)
        # re-entrant lock; keeps the request visible to wait_idle()
        with self._cond:
            self._timers.pop(path, None)
            if echo:
                logger.debug("Ignoring event for %s: file holds our own last write", path)
            else:
                self.submit(SingleTask(task_id))
            self._cond.notify_all()

    def tick(self) -> None:
        self.submit(FullScan())

    def inbox_arrival(self, task_id: Optional[str] = None) -> None:
        self.submit(SingleTask(task_id) if task_id else FullScan())

    def manual(self, task_id: Optional[str] = None) -> None:
        self.submit(SingleTask(task_id) if task_id else FullScan())

    def submit(self, request: Request) -> None:
        if isinstance(request, FullScan):
            self._submit_full()
        else:
            self._submit_single(request.task_id)

    # ── full scans ────────────────────────────────────────────

    def _submit_full(self) -> None:
        with self._cond:
            if not self._accepting:
                return
            if self._full_running:
                self._full_pending = True
                return
            self._full_running = True
            self._scan_pool.submit(self._full_loop)

    def _full_loop(self) -> None:
        while True:
            try:
                self._run_full_fn()
            except Exception:  # noqa: BLE001
                logger.exception("Full scan failed")
            with self._cond:
                if self._full_pending and self._accepting:
                    self._full_pending = False
                    continue
                self._full_pending = False
                self._full_running = False
                self._cond.notify_all()
                return

    # ── single-task passes ────────────────────────────────────

    def _submit_single(self, task_id: str) -> None:
        with self._cond:
            if not self._accepting:
                return
            if task_id in self._running:
                self._followup.add(task_id)
                return
            if task_id in self._pending:
                return
            self._pending.add(task_id)
            self._pool.submit(self._single, task_id)

    def _single(self, task_id: str) -> None:
        with self._cond:
            self._pending.discard(task_id)
            self._running.add(task_id)
        try:
            self._run_single_fn(task_id)
        except Exception:  # noqa: BLE001
            logger.exception("Single-task pass for %s failed", task_id)
        finally:
            with self._cond:
                self._running.discard(task_id)
                if task_id in self._followup:
                    self._followup.discard(task_id)
                    self._submit_single(task_id)
                self._cond.notify_all()
