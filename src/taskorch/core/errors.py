"""Error taxonomy shared by the engine components.

Per-task errors (``CorruptInput``, ``ConcurrencyConflict``,
``TransientExternalFailure``) are isolated to the task being reconciled.
Process-level errors (``StoreUnavailable``, ``HostUnavailable``) abort the
current pass; the next trigger retries.
"""
from __future__ import annotations


class OrchError(RuntimeError):
    pass


class TransientExternalFailure(OrchError):
    """A host or filesystem operation timed out or failed; retried next pass."""


class HostUnavailable(OrchError):
    """The session host cannot be reached at all (e.g. tmux is not installed)."""


class StoreUnavailable(OrchError):
    """The task directory itself cannot be read."""


class CorruptInput(OrchError):
    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"{task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class ConcurrencyConflict(OrchError):
    """Another writer holds the task's lock; the operation is deferred."""


class TaskNotFound(OrchError):
    pass
