from __future__ import annotations

from datetime import datetime, timezone
import os
import time

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent, FileOpenedEvent

from taskorch.core.inbox import InboxQueue
from taskorch.core.watcher import InboxHandler, TaskDirHandler, TaskWatcher, Ticker


class FakeCoalescer:
    def __init__(self) -> None:
        self.changed = []
        self.manual_calls = []
        self.arrivals = []

    def file_changed(self, path):
        self.changed.append(path)

    def manual(self, task_id=None):
        self.manual_calls.append(task_id)

    def inbox_arrival(self, task_id=None):
        self.arrivals.append(task_id)


@pytest.fixture
def coalescer():
    return FakeCoalescer()


@pytest.fixture
def inbox(tmp_path):
    return InboxQueue(str(tmp_path / "inbox"))


class TestTaskDirHandler:
    def test_modified_file(self, coalescer):
        TaskDirHandler(coalescer).dispatch(FileModifiedEvent("/t/a.md"))
        assert coalescer.changed == ["/t/a.md"]

    def test_move_reports_both_ends(self, coalescer):
        TaskDirHandler(coalescer).dispatch(FileMovedEvent("/t/.a.md.tmp", "/t/a.md"))
        assert coalescer.changed == ["/t/.a.md.tmp", "/t/a.md"]

    def test_ignores_directories_and_opens(self, coalescer):
        handler = TaskDirHandler(coalescer)
        handler.dispatch(DirModifiedEvent("/t"))
        handler.dispatch(FileOpenedEvent("/t/a.md"))
        assert coalescer.changed == []


class TestInboxHandler:
    def test_message_triggers_single_task(self, inbox, coalescer):
        inbox.enqueue("login", "hello")
        (name,) = os.listdir(inbox.inbox_dir)
        InboxHandler(inbox, coalescer).dispatch_path(os.path.join(inbox.inbox_dir, name))
        assert coalescer.arrivals == ["login"]
        assert inbox.pending_count("login") == 1

    def test_pane_observation_does_not_trigger_a_pass(self, inbox, coalescer):
        inbox.observe("login", "progress: working... step 3")
        (name,) = os.listdir(inbox.inbox_dir)
        InboxHandler(inbox, coalescer).dispatch_path(os.path.join(inbox.inbox_dir, name))
        assert coalescer.arrivals == [] and coalescer.manual_calls == []
        assert inbox.pending_count("login") == 1

    def test_scan_request_is_acked(self, inbox, coalescer):
        inbox.request_scan("login")
        inbox.request_scan()
        handler = InboxHandler(inbox, coalescer)
        for name in sorted(os.listdir(inbox.inbox_dir)):
            handler.dispatch_path(os.path.join(inbox.inbox_dir, name))
        assert coalescer.manual_calls == ["login", None]
        assert os.listdir(inbox.inbox_dir) == []

    def test_temp_and_foreign_files_are_ignored(self, inbox, coalescer, tmp_path):
        os.makedirs(inbox.inbox_dir, exist_ok=True)
        handler = InboxHandler(inbox, coalescer)
        handler.dispatch_path(os.path.join(inbox.inbox_dir, ".x.json.tmp"))
        handler.dispatch_path(os.path.join(inbox.inbox_dir, "notes.txt"))
        bad = os.path.join(inbox.inbox_dir, "0001-bad.json")
        with open(bad, "w", encoding="utf-8") as f:
            f.write("{not json")
        handler.dispatch_path(bad)
        assert coalescer.arrivals == [] and coalescer.manual_calls == []


def test_watcher_sees_task_file_writes(tmp_path, inbox, coalescer):
    tasks_dir = tmp_path / "tasks"
    tasks_dir.mkdir()
    watcher = TaskWatcher(str(tasks_dir), inbox, coalescer)
    watcher.start()
    try:
        (tasks_dir / "login.md").write_text("# Fix login\n", encoding="utf-8")
        inbox.enqueue("login", "hello")
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not (coalescer.changed and coalescer.arrivals):
            time.sleep(0.05)
    finally:
        watcher.stop()
    assert any(p.endswith("login.md") for p in coalescer.changed)
    assert "login" in coalescer.arrivals


class TestTicker:
    def test_interval(self):
        assert Ticker(lambda: None, interval=120).next_delay() == 120

    def test_interval_has_a_floor(self):
        assert Ticker(lambda: None, interval=0).next_delay() == 1.0

    def test_cron(self):
        ticker = Ticker(lambda: None, cron="*/5 * * * *")
        now = datetime(2026, 10, 18, 10, 0, 30, tzinfo=timezone.utc)
        assert ticker.next_delay(now) == pytest.approx(270)

    def test_invalid_cron(self):
        with pytest.raises(ValueError):
            Ticker(lambda: None, cron="every tuesday")
