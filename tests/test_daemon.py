"""End-to-end: the daemon loop with a real watcher and an in-memory host."""
from __future__ import annotations

from contextlib import contextmanager
import itertools
import os
import threading
import time

import pytest

from conftest import FakeHost, make_settings, read_file, write_task
from taskorch.core import reconciler
from taskorch.core.daemon import Orchestrator, run_daemon
from taskorch.core.errors import TransientExternalFailure
from taskorch.core.taskfile import FENCE


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def test_missing_task_directory_exits_1(tmp_path):
    settings = make_settings(str(tmp_path))
    os.rmdir(settings.tasks_dir)
    assert run_daemon(settings, host=FakeHost()) == 1


def test_daemon_spawns_and_applies_messages(tmp_path):
    settings = make_settings(str(tmp_path))
    host = FakeHost()
    write_task(settings.tasks_dir, "early", "# Present at startup\n")
    stop = threading.Event()
    result = {}
    thread = threading.Thread(
        target=lambda: result.setdefault("code", run_daemon(settings, host=host, stop_event=stop)),
        daemon=True,
    )
    thread.start()
    try:
        assert _wait_for(lambda: "task-early" in host.created)

        write_task(settings.tasks_dir, "late", "# Added while running\n")
        assert _wait_for(lambda: "task-late" in host.created)

        client = Orchestrator(settings, host=host)
        try:
            client.send("late", "tests pass, opening PR", "worker")
        finally:
            client.close()
        path = os.path.join(settings.tasks_dir, "late.md")
        assert _wait_for(lambda: "tests pass, opening PR" in read_file(path))
    finally:
        stop.set()
        thread.join(timeout=10)
    assert result["code"] == 0
    assert "State: assigned" in read_file(os.path.join(settings.tasks_dir, "early.md"))


def test_request_scan_goes_through_the_inbox_without_a_daemon(orch):
    orch.request_scan("x")
    assert len(os.listdir(orch.settings.inbox_dir)) == 1


def test_request_scan_runs_directly_when_coalescer_is_up(orch, host, tasks_dir):
    write_task(tasks_dir, "x", "# X\n")
    orch.coalescer.start()
    orch.request_scan("x")
    assert orch.coalescer.wait_idle(5)
    assert host.created == ["task-x"]
    assert not os.path.exists(orch.settings.inbox_dir) or os.listdir(orch.settings.inbox_dir) == []


@contextmanager
def _daemon(settings, host):
    stop = threading.Event()
    thread = threading.Thread(
        target=run_daemon, args=(settings,), kwargs=dict(host=host, stop_event=stop), daemon=True,
    )
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join(timeout=10)


@pytest.fixture
def passes(monkeypatch):
    scopes = []
    monkeypatch.setattr(reconciler, "log_pass", lambda report: scopes.append(report["scope"]))
    return scopes


def _assigned(tasks_dir, task_id):
    return write_task(
        tasks_dir, task_id,
        f"# {task_id}\n{FENCE}\nSession: task-{task_id}\nState: assigned\n",
    )


def _status_lines(path):
    return [line for line in read_file(path).splitlines() if line.startswith("- ")]


def test_idle_daemon_settles_after_one_pass(tmp_path, passes):
    settings = make_settings(str(tmp_path))
    host = FakeHost()
    path = write_task(settings.tasks_dir, "a", "# A\n")
    with _daemon(settings, host):
        assert _wait_for(lambda: "task-a" in host.created)
        assert _wait_for(lambda: "State: assigned" in read_file(path))
        time.sleep(1.0)
        seen, entries = list(passes), _status_lines(path)
        time.sleep(1.0)
        assert passes == seen
        assert _status_lines(path) == entries
    assert seen == ["full"]
    assert host.created == ["task-a"]


def test_spawn_failure_is_counted_once_per_pass(tmp_path, passes):
    settings = make_settings(str(tmp_path), max_spawn_attempts=5)
    host = FakeHost()
    host.fail_create = TransientExternalFailure("tmux is not responding")
    path = write_task(settings.tasks_dir, "a", "# A\n")
    with _daemon(settings, host):
        assert _wait_for(lambda: "Attempts: 1" in read_file(path))
        time.sleep(1.5)
        text = read_file(path)
    assert "Attempts: 1" in text
    assert "State: needs_input" not in text
    assert passes == ["full"]


def test_orphan_is_not_respawned_by_its_own_write(tmp_path, passes):
    settings = make_settings(str(tmp_path))
    host = FakeHost()
    path = _assigned(settings.tasks_dir, "a")
    with _daemon(settings, host):
        assert _wait_for(lambda: "State: orphaned" in read_file(path))
        time.sleep(1.5)
        text = read_file(path)
    assert "State: orphaned" in text
    assert host.created == []


def test_operator_edit_still_triggers_a_pass(tmp_path, passes):
    settings = make_settings(str(tmp_path))
    host = FakeHost()
    path = write_task(settings.tasks_dir, "a", "# A\n")
    with _daemon(settings, host):
        assert _wait_for(lambda: "State: assigned" in read_file(path))
        time.sleep(0.5)
        host.drop("task-a")
        write_task(settings.tasks_dir, "a", read_file(path).replace("# A\n", "# A (urgent)\n", 1))
        assert _wait_for(lambda: "State: orphaned" in read_file(path))
    assert "a" in passes


def test_worker_pane_observations_do_not_loop(tmp_path, monkeypatch, passes):
    settings = make_settings(str(tmp_path), tick_seconds=300)
    host = FakeHost()
    host.add("task-a")
    steps = itertools.count(1)
    monkeypatch.setattr(host, "capture", lambda name, lines=200: f"working... step {next(steps)}")
    path = _assigned(settings.tasks_dir, "a")
    with _daemon(settings, host):
        assert _wait_for(lambda: "[obs:" in read_file(path))

        client = Orchestrator(settings, host=host)
        try:
            client.send("a", "tests pass", "worker")
        finally:
            client.close()
        assert _wait_for(lambda: "tests pass" in read_file(path))
        time.sleep(1.0)
        text = read_file(path)
    assert text.count("[obs:") == 1
    assert passes.count("full") == 1
    assert len(passes) <= 3
