"""Centralized logging configuration for taskorch.

Sets up Python's logging system to write to both stdout and rotating
log files in the configured log directory. Also provides dedicated
JSONL streams for reconciliation passes and external actions.

Log directory structure::

    ~/tasks/.orch/logs/
    ├── taskorch.log      # All Python logger output (rotating)
    ├── passes.log        # One JSON record per reconciliation pass
    └── actions.log       # One JSON record per spawn/terminate/forward
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from typing import Any

pass_logger = logging.getLogger("taskorch._passes")
action_logger = logging.getLogger("taskorch._actions")


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files (and rotated backups) from the log directory.

    Called **before** any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.log.*"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "taskorch.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(pass_logger, os.path.join(log_dir, "passes.log"))
    _setup_jsonl_logger(action_logger, os.path.join(log_dir, "actions.log"))

    logging.getLogger("taskorch").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    # Raw formatter: message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def _now_stamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def log_pass(summary: dict[str, Any]) -> None:
    """Write one reconciliation pass summary to ``passes.log``."""
    record = {"ts": _now_stamp(), **summary}
    try:
        pass_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def log_action(task_id: str, action: str, detail: str = "", error: str | None = None) -> None:
    """Write one external action (spawn, terminate, forward) to ``actions.log``."""
    record: dict[str, Any] = {
        "ts": _now_stamp(),
        "task_id": task_id,
        "action": action,
        "detail": detail[:2000],
    }
    if error:
        record["error"] = error[:2000]
    try:
        action_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass
