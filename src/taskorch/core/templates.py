"""Template loader for worker prompts.

Loads markdown templates from ``taskorch/templates/`` and renders them
with Python ``str.format()`` placeholders.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

from taskorch.core.taskfile import Task

logger = logging.getLogger("taskorch.templates")

# This file lives at: taskorch/core/templates.py
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_TEMPLATES_DIR = os.path.normpath(os.path.join(_THIS_DIR, "..", "templates"))


@lru_cache(maxsize=8)
def _read_template(path: str) -> str:
    """Read a raw template file and return its contents (cached)."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Template not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def template_path(name: str) -> str:
    return os.path.join(_TEMPLATES_DIR, f"{name}.md")


def load_template(name: str, *, path: Optional[str] = None, **kwargs: str) -> str:
    """Load a template by name (or an explicit file) and render placeholders.

    Parameters
    ----------
    name : str
        Template name without extension, e.g. ``"worker"``.
    path : str, optional
        Operator-supplied template file used instead of the bundled one.
    **kwargs : str
        Values for ``{placeholder}`` substitution.
    """
    raw = _read_template(os.path.expanduser(path) if path else template_path(name))
    return raw.format(**kwargs)


def worker_prompt(task: Task, *, orch_cmd: str = "orch", prompt_file: Optional[str] = None) -> str:
    """Return the initial prompt pasted into a freshly spawned worker session."""
    return load_template(
        "worker",
        path=prompt_file,
        task_id=task.task_id,
        body=task.body.strip(),
        summary=task.summary or "Nothing reported yet.",
        workspace=task.effective_workspace or "the current directory",
        context=task.effective_context or "none",
        orch_cmd=orch_cmd,
    )
