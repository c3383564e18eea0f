import os

from fastapi.testclient import TestClient
import pytest

from conftest import make_settings, write_task
from taskorch.core.daemon import Orchestrator
from taskorch.core.gateway import create_app
from taskorch.core.inbox import KIND_SCAN

NEEDY = (
    "# Pick a colour\n"
    "<!-- orch -->\n"
    "Session: task-needy\n"
    "State: needs_input\n"
    "\n"
    "## Summary\n"
    "Which shade of blue?\n"
    "\n"
    "## Status\n"
    "- 2026-10-18T09:00:00.000000+00:00 [needs-input] worker: needs-input: which shade of blue?\n"
)


@pytest.fixture
def client(orch, tasks_dir):
    write_task(tasks_dir, "login", "# Fix login\n")
    write_task(tasks_dir, "needy", NEEDY)
    return TestClient(create_app(orch))


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_tasks(client, tasks_dir) -> None:
    write_task(tasks_dir, "broken", "# x\n<!-- orch -->\nState: sideways\n")
    data = client.get("/tasks").json()
    assert [t["task_id"] for t in data["tasks"]] == ["login", "needy"]
    login = data["tasks"][0]
    assert login["title"] == "Fix login"
    assert login["state"] == "unassigned"
    assert login["last_entry"] is None
    assert "broken" in data["corrupt"]


def test_needs_input(client) -> None:
    data = client.get("/tasks/needs-input").json()
    assert [t["task_id"] for t in data["tasks"]] == ["needy"]
    assert data["tasks"][0]["summary"] == "Which shade of blue?"
    assert data["tasks"][0]["session"] == "task-needy"


def test_post_message(client, orch) -> None:
    response = client.post("/tasks/needy/messages", json={"body": "  navy  "})
    assert response.status_code == 200
    key = response.json()["key"]
    (msg,) = list(orch.inbox.poll("needy"))
    assert msg.key == key
    assert msg.body == "navy"
    assert msg.source == "operator"


def test_post_message_unknown_task(client) -> None:
    response = client.post("/tasks/ghost/messages", json={"body": "hello"})
    assert response.status_code == 404


@pytest.mark.parametrize("payload", [
    {"body": "   "},
    {"body": "hi", "source": "assessor"},
    {"body": "hi", "source": "martian"},
])
def test_post_message_rejected(client, payload) -> None:
    assert client.post("/tasks/needy/messages", json=payload).status_code == 400


def test_scan_is_queued(client, orch) -> None:
    response = client.post("/scan", json={"task_id": "login"})
    assert response.json() == {"status": "queued", "scope": "login"}
    (msg,) = list(orch.inbox.poll(kind=KIND_SCAN))
    assert msg.task_id == "login"


def test_full_scan_without_body(client, orch) -> None:
    response = client.post("/scan")
    assert response.json()["scope"] == "full"
    assert orch.inbox.pending_count() == 0
    assert len(list(orch.inbox.poll(kind=KIND_SCAN))) == 1


def test_close_task(client, orch, host, tasks_dir) -> None:
    host.add("task-needy")
    response = client.post("/tasks/needy/close", json={"reason": "went with navy"})
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "closed"
    assert data["task"]["state"] == "closed"
    assert not os.path.exists(os.path.join(tasks_dir, "needy.md"))
    assert os.path.exists(os.path.join(orch.settings.closed_dir, "needy.md"))
    assert "task-needy" in host.killed


def test_close_keeps_session(client, host) -> None:
    host.add("task-needy")
    response = client.post("/tasks/needy/close", json={"keep_session": True})
    assert response.status_code == 200
    assert host.killed == []


def test_close_unknown_task(client) -> None:
    assert client.post("/tasks/ghost/close").status_code == 404


def test_token_required(tmp_path, host) -> None:
    settings = make_settings(str(tmp_path), http_token="s3cret")
    orch = Orchestrator(settings, host=host)
    try:
        client = TestClient(create_app(orch))
        assert client.get("/health").status_code == 200
        assert client.get("/tasks").status_code == 401
        assert client.get("/tasks", headers={"x-orch-token": "nope"}).status_code == 401
        assert client.get("/tasks", headers={"x-orch-token": "s3cret"}).status_code == 200
    finally:
        orch.close()


def test_missing_directory_is_503(tmp_path, host) -> None:
    settings = make_settings(str(tmp_path))
    os.rmdir(settings.tasks_dir)
    orch = Orchestrator(settings, host=host)
    try:
        client = TestClient(create_app(orch))
        assert client.get("/tasks").status_code == 503
    finally:
        orch.close()
