"""Tests for the inbox spool."""
from __future__ import annotations

import os

import pytest

from taskorch.core.inbox import (
    KIND_SCAN,
    SOURCE_ASSESSOR,
    SOURCE_WORKER,
    InboxQueue,
    message_key,
    observation_key,
)


@pytest.fixture
def inbox(tmp_path):
    return InboxQueue(str(tmp_path / "inbox"))


def test_poll_empty_when_directory_missing(inbox):
    assert list(inbox.poll()) == []
    assert inbox.pending_count() == 0


def test_fifo_within_a_task(inbox):
    for i in range(5):
        inbox.enqueue("a", f"a-{i}", SOURCE_WORKER)
        inbox.enqueue("b", f"b-{i}", SOURCE_WORKER)
    assert [m.body for m in inbox.poll("a")] == [f"a-{i}" for i in range(5)]
    assert [m.body for m in inbox.poll("b")] == [f"b-{i}" for i in range(5)]
    assert inbox.pending_count() == 10


def test_message_fields_survive_the_spool(inbox):
    sent = inbox.enqueue("a", "tests pass", SOURCE_WORKER)
    (got,) = list(inbox.poll("a"))
    assert got == sent
    assert got.key == message_key("a", SOURCE_WORKER, "tests pass", sent.sent_at.isoformat())


def test_ack_removes_message(inbox):
    first = inbox.enqueue("a", "one")
    inbox.enqueue("a", "two")
    assert inbox.ack(first.key) == 1
    assert [m.body for m in inbox.poll("a")] == ["two"]
    assert inbox.ack(first.key) == 0


def test_same_key_delivered_twice_is_acked_at_once(inbox):
    inbox.enqueue("a", "x", key="fixedkey")
    inbox.enqueue("a", "x", key="fixedkey")
    assert [m.key for m in inbox.poll("a")] == ["fixedkey", "fixedkey"]
    assert inbox.ack("fixedkey") == 2
    assert inbox.pending_count() == 0


def test_observation_key_is_content_only(inbox):
    one = inbox.observe("a", "progress: compiling")
    two = inbox.observe("a", "progress: compiling")
    assert one.key == two.key == observation_key("a", "progress: compiling")
    assert one.source == SOURCE_ASSESSOR
    assert inbox.observe("a", "progress: linking").key != one.key


def test_scan_requests_are_separate_from_messages(inbox):
    inbox.request_scan()
    inbox.request_scan("a")
    inbox.enqueue("a", "hello")
    assert [m.body for m in inbox.poll()] == ["hello"]
    scans = list(inbox.poll(kind=KIND_SCAN))
    assert [m.task_id for m in scans] == ["", "a"]


def test_unreadable_file_is_skipped_and_left(inbox):
    inbox.enqueue("a", "good")
    broken = os.path.join(inbox.inbox_dir, "00000000000000000001-broken.json")
    with open(broken, "w") as f:
        f.write("{not json")
    assert [m.body for m in inbox.poll()] == ["good"]
    assert os.path.exists(broken)


def test_temp_files_are_ignored(inbox):
    os.makedirs(inbox.inbox_dir)
    with open(os.path.join(inbox.inbox_dir, ".half-written.json.tmp"), "w") as f:
        f.write("{}")
    assert list(inbox.poll()) == []


def test_unknown_source_rejected(inbox):
    with pytest.raises(ValueError):
        inbox.enqueue("a", "x", "robot")
