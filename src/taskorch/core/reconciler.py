"""Reconciler: the per-task lifecycle state machine.

Each pass works in three steps per task:

1. **snapshot**: reread the task file, look up its session, drain its
   pending inbox messages;
2. **plan**: :func:`plan_task` computes a :class:`TaskPlan` from the
   snapshot alone (pure, no I/O);
3. **apply**: external actions (terminate a dead session, spawn, forward
   operator messages) run first with no lock held, then a single
   ``TaskStore.update`` records the outcome, then consumed messages are
   acked.

Units for different tasks run on a bounded thread pool. A per-task claim
keeps two passes from working on the same task at once: a full scan skips
a claimed task, a single-task pass waits for it.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set

from taskorch.core.errors import (
    ConcurrencyConflict,
    CorruptInput,
    HostUnavailable,
    StoreUnavailable,
    TaskNotFound,
    TransientExternalFailure,
)
from taskorch.core.inbox import SOURCE_ASSESSOR, SOURCE_OPERATOR, SOURCE_WORKER, InboxMessage
from taskorch.core.logging_config import log_action, log_pass
from taskorch.core.sessions import Session
from taskorch.core.taskfile import (
    ASSIGNED,
    CLOSED,
    NEEDS_INPUT,
    ORPHANED,
    UNASSIGNED,
    Task,
)
from taskorch.core.templates import worker_prompt
from taskorch.core.worker import SpawnResult

logger = logging.getLogger("taskorch.reconciler")

NEEDS_INPUT_MARKERS = ("needs input", "needs-input", "question:", "blocked:")

# lifecycle actions
ADOPT = "adopt"
SPAWN = "spawn"
RESPAWN = "respawn"
ORPHAN = "orphan"
REAPPEARED = "reappeared"


def is_needs_input(body: str) -> bool:
    """True when a message asks for a human decision."""
    text = body.strip().lower()
    return text.startswith(NEEDS_INPUT_MARKERS) or "[needs-input]" in text


# ── snapshot and plan ─────────────────────────────────────────


@dataclass(frozen=True)
class SessionView:
    """What the session host says about the session a task maps to.

    ``known`` is False when the host could not be queried this pass; no
    lifecycle decision is taken on an unknown view.
    """
    name: str
    known: bool
    session: Optional[Session] = None

    @property
    def live(self) -> bool:
        return self.known and self.session is not None and self.session.alive

    @property
    def dead(self) -> bool:
        """A session still exists under the name but its panes have exited."""
        return self.known and self.session is not None and not self.session.alive

    @property
    def attached(self) -> bool:
        return self.session is not None and self.session.is_attached


def session_view(task: Task, sessions: Optional[Dict[str, Session]], default_name: str) -> SessionView:
    name = task.session or default_name
    if sessions is None:
        return SessionView(name=name, known=False)
    return SessionView(name=name, known=True, session=sessions.get(name))


@dataclass
class TaskPlan:
    task_id: str
    from_state: str
    from_session: Optional[str]
    session_name: str
    action: Optional[str] = None
    terminate: Optional[str] = None
    messages: List[InboxMessage] = field(default_factory=list)
    forward: List[InboxMessage] = field(default_factory=list)
    deferred: List[InboxMessage] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.action is None and not self.messages

    @property
    def consumed(self) -> List[str]:
        return [m.key for m in self.messages]


def plan_task(
    task: Task,
    view: SessionView,
    messages: List[InboxMessage],
    *,
    session_name: str,
) -> TaskPlan:
    """Decide what to do for one task. Pure: reads only its arguments."""
    plan = TaskPlan(
        task_id=task.task_id,
        from_state=task.state,
        from_session=task.session,
        session_name=session_name,
    )

    if view.known:
        if task.state == UNASSIGNED:
            if view.live:
                plan.action = ADOPT
            else:
                plan.action = SPAWN
                if view.dead:
                    plan.terminate = view.name
        elif task.state == ASSIGNED and not view.live:
            plan.action = ORPHAN
        elif task.state == ORPHANED:
            if view.live:
                plan.action = REAPPEARED
            else:
                plan.action = RESPAWN
                if view.dead:
                    plan.terminate = view.name

    for idx, msg in enumerate(messages):
        if task.has_key(msg.key):
            plan.messages.append(msg)  # already applied, only needs an ack
            continue
        if msg.source == SOURCE_OPERATOR and not view.known and task.session:
            # cannot tell whether to deliver it; keep it and everything after
            plan.deferred = list(messages[idx:])
            break
        if msg.source == SOURCE_OPERATOR and view.live and not view.attached:
            plan.forward.append(msg)
        plan.messages.append(msg)
    return plan


# ── applying a plan to a task descriptor ──────────────────────


@dataclass
class ActionOutcome:
    spawn: Optional[SpawnResult] = None
    spawn_error: Optional[str] = None
    delivered: Dict[str, bool] = field(default_factory=dict)


def apply_lifecycle(
    task: Task,
    plan: TaskPlan,
    outcome: ActionOutcome,
    *,
    max_spawn_attempts: int,
) -> None:
    name = plan.session_name
    if plan.action == ADOPT:
        task.session = name
        task.state = ASSIGNED
        task.attempts = 0
        task.append_status("adopt", f"Adopted existing session {name}")
    elif plan.action == ORPHAN:
        task.state = ORPHANED
        task.append_status("orphaned", f"Session {task.session or name} is gone")
    elif plan.action == REAPPEARED:
        task.state = ASSIGNED
        task.append_status("assigned", f"Session {task.session or name} reappeared")
    elif plan.action in (SPAWN, RESPAWN):
        if outcome.spawn is not None:
            result = outcome.spawn
            task.session = result.name
            task.state = ASSIGNED
            task.attempts = 0
            if result.adopted:
                task.append_status("adopt", f"Adopted existing session {result.name}")
            else:
                text = f"Spawned worker session {result.name}"
                if not result.prompt_delivered:
                    text += " (prompt not delivered)"
                task.append_status(plan.action, text)
        else:
            task.attempts += 1
            task.append_status(
                "spawn-failed",
                f"attempt {task.attempts}/{max_spawn_attempts}: {outcome.spawn_error}",
            )
            if task.attempts >= max_spawn_attempts:
                task.state = NEEDS_INPUT
                task.append_status(
                    "needs-input",
                    f"Gave up after {task.attempts} failed spawn attempts; send a message to retry",
                )


def apply_messages(task: Task, messages: List[InboxMessage], delivered: Dict[str, bool]) -> int:
    """Apply inbox messages in order; already-applied keys are skipped."""
    applied = 0
    for msg in messages:
        if task.has_key(msg.key) or task.state == CLOSED:
            continue
        if is_needs_input(msg.body):
            task.state = NEEDS_INPUT
        elif task.state == NEEDS_INPUT and msg.source != SOURCE_ASSESSOR:
            task.state = ASSIGNED if task.session else UNASSIGNED
            task.attempts = 0
        if msg.source == SOURCE_WORKER:
            task.set_summary(msg.body)
        prefix = "obs" if msg.source == SOURCE_ASSESSOR else "msg"
        text = f"{msg.source}: {msg.body}"
        if msg.key in delivered and not delivered[msg.key]:
            text += " (not delivered)"
        task.append_status(f"{prefix}:{msg.key}", text)
        applied += 1
    return applied


# ── reports ───────────────────────────────────────────────────


@dataclass
class UnitOutcome:
    task_id: str
    action: Optional[str] = None
    adopted: bool = False
    spawned: bool = False
    spawn_failed: bool = False
    messages_applied: int = 0
    skipped: bool = False
    deferred: Optional[str] = None
    corrupt: Optional[str] = None
    transient: Optional[str] = None
    error: Optional[str] = None
    vanished: bool = False


@dataclass
class PassReport:
    scope: str
    started_at: str = ""
    duration_ms: int = 0
    tasks: int = 0
    spawned: List[str] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    respawned: List[str] = field(default_factory=list)
    reappeared: List[str] = field(default_factory=list)
    spawn_failed: List[str] = field(default_factory=list)
    messages_applied: int = 0
    corrupt: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    deferred: Dict[str, str] = field(default_factory=dict)
    transient: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    aborted: Optional[str] = None

    def add(self, unit: UnitOutcome) -> None:
        tid = unit.task_id
        if unit.skipped:
            self.skipped.append(tid)
            return
        if unit.corrupt is not None:
            self.corrupt[tid] = unit.corrupt
        if unit.deferred is not None:
            self.deferred[tid] = unit.deferred
        if unit.transient is not None:
            self.transient[tid] = unit.transient
        if unit.error is not None:
            self.errors[tid] = unit.error
        if unit.adopted:
            self.adopted.append(tid)
        elif unit.spawned:
            (self.respawned if unit.action == RESPAWN else self.spawned).append(tid)
        if unit.spawn_failed:
            self.spawn_failed.append(tid)
        if unit.action == ORPHAN:
            self.orphaned.append(tid)
        elif unit.action == REAPPEARED:
            self.reappeared.append(tid)
        self.messages_applied += unit.messages_applied

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── the reconciler ────────────────────────────────────────────


class Reconciler:
    def __init__(
        self,
        store,
        registry,
        inbox,
        supervisor,
        assessor=None,
        *,
        max_workers: int = 4,
        max_spawn_attempts: int = 5,
        fs_timeout: float = 10.0,
        claim_timeout: float = 60.0,
        prompt_builder: Optional[Callable[[Task], str]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.inbox = inbox
        self.supervisor = supervisor
        self.assessor = assessor
        self.max_workers = max(1, max_workers)
        self.max_spawn_attempts = max_spawn_attempts
        self.fs_timeout = fs_timeout
        self.claim_timeout = claim_timeout
        self.prompt_builder = prompt_builder or worker_prompt
        self._claims: Set[str] = set()
        self._claims_cond = threading.Condition()
        self._io = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="orch-io")

    def close(self) -> None:
        self._io.shutdown(wait=False)

    # ── claims ────────────────────────────────────────────────

    def _claim(self, task_id: str, wait: bool) -> bool:
        """Take the per-task claim; waiting (up to ``claim_timeout``) only if *wait*."""
        deadline = time.monotonic() + self.claim_timeout
        with self._claims_cond:
            while task_id in self._claims:
                remaining = deadline - time.monotonic()
                if not wait or remaining <= 0:
                    return False
                self._claims_cond.wait(remaining)
            self._claims.add(task_id)
            return True

    def _release(self, task_id: str) -> None:
        with self._claims_cond:
            self._claims.discard(task_id)
            self._claims_cond.notify_all()

    # ── helpers ───────────────────────────────────────────────

    def _timed(self, fn: Callable[[], Any], what: str) -> Any:
        """Run a filesystem read with ``fs_timeout`` as its upper bound."""
        future = self._io.submit(fn)
        try:
            return future.result(timeout=self.fs_timeout)
        except FutureTimeout:
            raise TransientExternalFailure(f"{what} timed out after {self.fs_timeout}s") from None

    def _sessions(self, report: PassReport) -> Optional[Dict[str, Session]]:
        try:
            return self.registry.list_live()
        except TransientExternalFailure as exc:
            logger.warning("Session host query failed; session state unknown this pass: %s", exc)
            report.transient["*"] = str(exc)
            return None

    def _finish(self, report: PassReport, started: float) -> PassReport:
        report.duration_ms = int((time.monotonic() - started) * 1000)
        log_pass(report.to_dict())
        if report.aborted:
            logger.error("Pass %s aborted: %s", report.scope, report.aborted)
        else:
            logger.info(
                "Pass %s: %d task(s), spawned=%d respawned=%d adopted=%d orphaned=%d "
                "messages=%d corrupt=%d skipped=%d deferred=%d transient=%d errors=%d",
                report.scope, report.tasks, len(report.spawned), len(report.respawned),
                len(report.adopted), len(report.orphaned), report.messages_applied,
                len(report.corrupt), len(report.skipped), len(report.deferred),
                len(report.transient), len(report.errors),
            )
        return report

    def _new_report(self, scope: str) -> PassReport:
        return PassReport(scope=scope, started_at=datetime.now(timezone.utc).isoformat())

    # ── passes ────────────────────────────────────────────────

    def run_full(self) -> PassReport:
        """Reconcile every task in the directory.

        This is the only pass that assesses worker panes; single-task
        passes apply whatever observations are already queued.
        """
        started = time.monotonic()
        report = self._new_report("full")
        try:
            listing = self._timed(self.store.list, "listing tasks")
        except (StoreUnavailable, TransientExternalFailure) as exc:
            report.aborted = str(exc)
            return self._finish(report, started)

        report.tasks = len(listing.tasks)
        for task_id, exc in listing.corrupt.items():
            report.corrupt[task_id] = exc.reason
        report.transient.update(listing.failures)

        try:
            sessions = self._sessions(report)
            if self.assessor is not None and sessions is not None:
                targets = []
                for task in listing.sorted_tasks():
                    view = session_view(task, sessions, self.supervisor.session_name(task.task_id))
                    if task.state == ASSIGNED and view.live and not view.attached:
                        targets.append((task.task_id, view.name))
                self.assessor.assess(targets)

            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="orch-unit") as pool:
                futures = [
                    pool.submit(self._unit, task_id, wait=False)
                    for task_id in sorted(listing.tasks)
                ]
                for future in futures:
                    report.add(future.result())
        except (StoreUnavailable, HostUnavailable) as exc:
            report.aborted = str(exc)
            return self._finish(report, started)

        known = set(listing.tasks) | set(listing.corrupt) | set(listing.failures)
        self._drop_orphan_messages(known)
        return self._finish(report, started)

    def run_single(self, task_id: str) -> PassReport:
        """Reconcile one task, waiting for any pass already working on it."""
        started = time.monotonic()
        report = self._new_report(task_id)
        report.tasks = 1
        try:
            report.add(self._unit(task_id, wait=True))
        except (StoreUnavailable, HostUnavailable) as exc:
            report.aborted = str(exc)
        return self._finish(report, started)

    def _drop_orphan_messages(self, known: Set[str]) -> None:
        for msg in list(self.inbox.poll()):
            if msg.task_id not in known:
                logger.warning("Dropping message %s for unknown task %r", msg.key, msg.task_id)
                self.inbox.ack(msg.key)

    # ── one task ──────────────────────────────────────────────

    def _unit(self, task_id: str, *, wait: bool) -> UnitOutcome:
        out = UnitOutcome(task_id=task_id)
        if not self._claim(task_id, wait):
            if wait:
                exc = ConcurrencyConflict(
                    f"task {task_id} still held by another pass after {self.claim_timeout}s"
                )
                logger.warning("Deferring %s: %s", task_id, exc)
                out.deferred = str(exc)
            else:
                logger.debug("Skipping %s: another pass holds it", task_id)
                out.skipped = True
            return out
        try:
            self._reconcile(task_id, out)
        except TaskNotFound:
            out.vanished = True
            for msg in list(self.inbox.poll(task_id)):
                logger.warning("Dropping message %s for missing task %s", msg.key, task_id)
                self.inbox.ack(msg.key)
        except CorruptInput as exc:
            logger.warning("Skipping corrupt task %s: %s", task_id, exc.reason)
            out.corrupt = exc.reason
        except ConcurrencyConflict as exc:
            logger.info("Deferring %s: %s", task_id, exc)
            out.deferred = str(exc)
        except TransientExternalFailure as exc:
            logger.warning("Transient failure on %s: %s", task_id, exc)
            out.transient = str(exc)
        except (StoreUnavailable, HostUnavailable):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Reconciling %s failed", task_id)
            out.error = f"{type(exc).__name__}: {exc}"
        finally:
            self._release(task_id)
        return out

    def _reconcile(self, task_id: str, out: UnitOutcome) -> None:
        task = self._timed(lambda: self.store.read(task_id), f"reading {task_id}")
        if task.state == CLOSED:
            return
        # queried under the claim so a pass that waited sees the current sessions
        try:
            sessions = self.registry.list_live()
        except TransientExternalFailure as exc:
            out.transient = f"session host: {exc}"
            sessions = None
        default_name = self.supervisor.session_name(task_id)
        view = session_view(task, sessions, default_name)

        messages = list(self.inbox.poll(task_id))
        plan = plan_task(task, view, messages, session_name=default_name)
        if plan.is_noop:
            return

        outcome = self._execute(task, plan, view)
        out.action = plan.action

        def mutate(fresh: Task) -> None:
            if fresh.state != plan.from_state or fresh.session != plan.from_session:
                raise ConcurrencyConflict(
                    f"task {task_id} changed from {plan.from_state} to {fresh.state} during the pass"
                )
            apply_lifecycle(fresh, plan, outcome, max_spawn_attempts=self.max_spawn_attempts)
            out.messages_applied = apply_messages(fresh, plan.messages, outcome.delivered)

        try:
            self.store.update(task_id, mutate)
        except TaskNotFound:
            if outcome.spawn is not None and not outcome.spawn.adopted:
                logger.warning("Task %s vanished while spawning; terminating %s", task_id, outcome.spawn.name)
                self.supervisor.terminate(outcome.spawn.name)
            raise

        if outcome.spawn is not None:
            out.spawned = True
            out.adopted = outcome.spawn.adopted
        elif plan.action == ADOPT:
            out.adopted = True
        out.spawn_failed = outcome.spawn_error is not None
        for key in plan.consumed:
            self.inbox.ack(key)

    def _execute(self, task: Task, plan: TaskPlan, view: SessionView) -> ActionOutcome:
        """Run the plan's external actions. No store lock is held here."""
        outcome = ActionOutcome()
        if plan.terminate:
            self.supervisor.terminate(plan.terminate)

        if plan.action in (SPAWN, RESPAWN):
            try:
                prompt = self.prompt_builder(task)
            except (OSError, KeyError, IndexError, ValueError) as exc:
                outcome.spawn_error = f"cannot render worker prompt: {exc}"
            else:
                try:
                    outcome.spawn = self.supervisor.spawn(task.task_id, prompt, task.effective_workspace)
                except TransientExternalFailure as exc:
                    outcome.spawn_error = str(exc)
            if outcome.spawn_error:
                logger.warning("Spawning %s failed: %s", task.task_id, outcome.spawn_error)
                log_action(task.task_id, plan.action, plan.session_name, error=outcome.spawn_error)

        for msg in plan.forward:
            try:
                delivered = self.supervisor.send_literal(view.name, msg.body)
            except TransientExternalFailure as exc:
                logger.warning("Forwarding %s to %s failed: %s", msg.key, view.name, exc)
                delivered = False
            outcome.delivered[msg.key] = delivered
            if delivered:
                log_action(task.task_id, "forward", msg.body)
        return outcome
