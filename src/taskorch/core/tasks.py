"""Task Store: the task directory as a repository of descriptors.

Only the trailer written by :func:`render_task` is ever changed here; the
operator-authored body is carried through untouched and any attempt by a
mutator to edit it (or to shrink the status log) is rejected.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import copy
import fcntl
import hashlib
import logging
import os
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional

from taskorch.core.errors import (
    ConcurrencyConflict,
    CorruptInput,
    StoreUnavailable,
    TaskNotFound,
    TransientExternalFailure,
)
from taskorch.core.taskfile import CLOSED, Task, parse_task, render_task

logger = logging.getLogger("taskorch.tasks")

TASK_SUFFIX = ".md"

Mutator = Callable[[Task], Optional[bool]]


@dataclass
class TaskListing:
    tasks: Dict[str, Task] = field(default_factory=dict)
    corrupt: Dict[str, CorruptInput] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def sorted_tasks(self) -> List[Task]:
        return [self.tasks[k] for k in sorted(self.tasks)]


class TaskStore:
    """Reads and writes task files under a per-task exclusivity lock.

    The lock is two-layered: a ``threading.Lock`` for writers inside this
    process and an ``fcntl`` lock file so the CLI and the daemon serialize
    against each other.
    """

    def __init__(
        self,
        tasks_dir: str,
        locks_dir: Optional[str] = None,
        closed_dir: Optional[str] = None,
        lock_timeout: float = 5.0,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.locks_dir = locks_dir or os.path.join(tasks_dir, ".orch", "locks")
        self.closed_dir = closed_dir or os.path.join(tasks_dir, ".orch", "closed")
        self.lock_timeout = lock_timeout
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._written: Dict[str, str] = {}

    # ── reading ───────────────────────────────────────────────

    def path_for(self, task_id: str) -> str:
        return os.path.join(self.tasks_dir, f"{task_id}{TASK_SUFFIX}")

    @staticmethod
    def task_id_for(path: str) -> Optional[str]:
        """Map a path inside the task directory to a task id, if it is one."""
        name = os.path.basename(path)
        if name.startswith(".") or not name.endswith(TASK_SUFFIX):
            return None
        return name[: -len(TASK_SUFFIX)] or None

    def task_ids(self) -> List[str]:
        try:
            names = os.listdir(self.tasks_dir)
        except OSError as exc:
            raise StoreUnavailable(f"cannot read task directory {self.tasks_dir}: {exc}") from exc
        ids = []
        for name in names:
            task_id = self.task_id_for(name)
            if task_id and os.path.isfile(os.path.join(self.tasks_dir, name)):
                ids.append(task_id)
        return sorted(ids)

    def _read_text(self, task_id: str) -> str:
        path = self.path_for(task_id)
        try:
            with open(path, "rb") as handle:
                raw = handle.read()
        except FileNotFoundError:
            raise TaskNotFound(task_id) from None
        except OSError as exc:
            raise TransientExternalFailure(f"reading {path}: {exc}") from exc
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptInput(task_id, f"not valid UTF-8 ({exc.reason} at byte {exc.start})") from None

    def read(self, task_id: str) -> Task:
        return parse_task(task_id, self._read_text(task_id))

    def get(self, task_id: str) -> Optional[Task]:
        try:
            return self.read(task_id)
        except TaskNotFound:
            return None

    def list(self) -> TaskListing:
        """Parse every task file. Malformed files are reported, not raised."""
        listing = TaskListing()
        for task_id in self.task_ids():
            try:
                listing.tasks[task_id] = self.read(task_id)
            except TaskNotFound:
                continue  # removed between listdir and read
            except CorruptInput as exc:
                logger.warning("Corrupt task file %s: %s", task_id, exc.reason)
                listing.corrupt[task_id] = exc
            except TransientExternalFailure as exc:
                listing.failures[task_id] = str(exc)
        return listing

    # ── locking ───────────────────────────────────────────────

    def _thread_lock(self, task_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[task_id] = lock
            return lock

    @contextmanager
    def lock(self, task_id: str) -> Iterator[None]:
        """Hold the task's exclusivity lock, or raise ConcurrencyConflict."""
        thread_lock = self._thread_lock(task_id)
        if not thread_lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflict(f"task {task_id} is locked by another writer")
        try:
            os.makedirs(self.locks_dir, exist_ok=True)
            handle = open(os.path.join(self.locks_dir, f"{task_id}.lock"), "a+")
            try:
                deadline = time.monotonic() + self.lock_timeout
                while True:
                    try:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except OSError:
                        if time.monotonic() >= deadline:
                            raise ConcurrencyConflict(
                                f"task {task_id} is locked by another process"
                            ) from None
                        time.sleep(0.05)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            finally:
                handle.close()
        finally:
            thread_lock.release()

    # ── writing ───────────────────────────────────────────────

    def _write_atomic(self, path: str, text: str) -> None:
        directory = os.path.dirname(path)
        tmp = os.path.join(directory, f".{os.path.basename(path)}.tmp")
        with open(tmp, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)

    def update(self, task_id: str, mutator: Mutator) -> Task:
        """Atomically read, mutate and write back one task.

        The mutator edits the system-owned fields of the task in place. It
        may return ``False`` to signal "nothing to do"; the file is also left
        alone when the rendered text is unchanged.
        """
        with self.lock(task_id):
            text = self._read_text(task_id)
            task = parse_task(task_id, text)
            before = copy.deepcopy(task)
            if mutator(task) is False:
                return before
            _check_owned_fields(before, task)
            rendered = render_task(task)
            if rendered != text:
                try:
                    self._write_atomic(self.path_for(task_id), rendered)
                except OSError as exc:
                    raise TransientExternalFailure(f"writing {task_id}: {exc}") from exc
                with self._registry_lock:
                    self._written[task_id] = _digest(rendered.encode("utf-8"))
            return task

    def is_own_write(self, path: str) -> bool:
        """True when *path* still holds exactly what this store last wrote to it."""
        task_id = self.task_id_for(path)
        if task_id is None:
            return False
        with self._registry_lock:
            digest = self._written.get(task_id)
        if digest is None:
            return False
        try:
            with open(self.path_for(task_id), "rb") as handle:
                return _digest(handle.read()) == digest
        except OSError:
            return False

    def close(self, task_id: str, reason: str = "closed by operator") -> Task:
        """Close a task and move its file out of the live task directory."""
        with self.lock(task_id):
            task = parse_task(task_id, self._read_text(task_id))
            task.state = CLOSED
            task.append_status("closed", reason)
            os.makedirs(self.closed_dir, exist_ok=True)
            target = os.path.join(self.closed_dir, f"{task_id}{TASK_SUFFIX}")
            if os.path.exists(target):
                stamp = time.strftime("%Y%m%d%H%M%S")
                target = os.path.join(self.closed_dir, f"{task_id}.{stamp}{TASK_SUFFIX}")
            self._write_atomic(target, render_task(task))
            os.remove(self.path_for(task_id))
        logger.info("Task %s closed: %s", task_id, reason)
        return task


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _check_owned_fields(before: Task, after: Task) -> None:
    if after.body != before.body:
        raise ValueError(f"task {before.task_id}: the task body is operator-owned")
    if after.status[: len(before.status)] != before.status:
        raise ValueError(f"task {before.task_id}: status log is append-only")
    if after.state == CLOSED and before.state != CLOSED:
        raise ValueError(f"task {before.task_id}: closing requires TaskStore.close()")
