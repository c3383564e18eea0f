from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

from taskorch import __version__
from taskorch.core.daemon import Orchestrator
from taskorch.core.errors import ConcurrencyConflict, CorruptInput, StoreUnavailable, TaskNotFound
from taskorch.core.inbox import SOURCE_OPERATOR, SOURCE_WORKER
from taskorch.core.taskfile import NEEDS_INPUT, Task

logger = logging.getLogger("taskorch.gateway")


class MessageRequest(BaseModel):
    body: str
    source: str = SOURCE_OPERATOR


class MessageResponse(BaseModel):
    task_id: str
    key: str


class ScanRequest(BaseModel):
    task_id: Optional[str] = None


class CloseRequest(BaseModel):
    reason: str = "closed by operator"
    keep_session: bool = False


def _task_dict(task: Task) -> dict:
    last = task.last_entry()
    return {
        "task_id": task.task_id,
        "title": task.title,
        "state": task.state,
        "session": task.session,
        "workspace": task.effective_workspace,
        "context": task.effective_context,
        "summary": task.summary,
        "attempts": task.attempts,
        "last_entry": last.render()[2:] if last else None,
    }


def create_app(orch: Orchestrator) -> FastAPI:
    settings = orch.settings
    app = FastAPI(title="taskorch", version=__version__)

    def _check_token(token: Optional[str]) -> None:
        if settings.http_token and token != settings.http_token:
            raise HTTPException(status_code=401, detail="Invalid orch token")

    def _listing():
        try:
            return orch.store.list()
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/tasks")
    def list_tasks(x_orch_token: Optional[str] = Header(default=None)) -> dict:
        _check_token(x_orch_token)
        listing = _listing()
        return {
            "tasks": [_task_dict(t) for t in listing.sorted_tasks()],
            "corrupt": {k: v.reason for k, v in listing.corrupt.items()},
        }

    @app.get("/tasks/needs-input")
    def needs_input(x_orch_token: Optional[str] = Header(default=None)) -> dict:
        _check_token(x_orch_token)
        listing = _listing()
        return {"tasks": [_task_dict(t) for t in listing.sorted_tasks() if t.state == NEEDS_INPUT]}

    @app.post("/tasks/{task_id}/messages", response_model=MessageResponse)
    def post_message(
        task_id: str,
        req: MessageRequest,
        x_orch_token: Optional[str] = Header(default=None),
    ) -> MessageResponse:
        _check_token(x_orch_token)
        if req.source not in (SOURCE_OPERATOR, SOURCE_WORKER):
            raise HTTPException(status_code=400, detail=f"unsupported source {req.source!r}")
        if not req.body.strip():
            raise HTTPException(status_code=400, detail="empty message")
        try:
            msg = orch.send(task_id, req.body.strip(), req.source)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail=f"unknown task {task_id}") from exc
        logger.info("Message for %s from %s via HTTP (key=%s)", task_id, req.source, msg.key)
        return MessageResponse(task_id=task_id, key=msg.key)

    @app.post("/scan")
    def scan(req: Optional[ScanRequest] = None, x_orch_token: Optional[str] = Header(default=None)) -> dict[str, str]:
        _check_token(x_orch_token)
        task_id = req.task_id if req else None
        orch.request_scan(task_id)
        return {"status": "queued", "scope": task_id or "full"}

    @app.post("/tasks/{task_id}/close")
    def close_task(
        task_id: str,
        req: Optional[CloseRequest] = None,
        x_orch_token: Optional[str] = Header(default=None),
    ) -> dict:
        _check_token(x_orch_token)
        req = req or CloseRequest()
        try:
            task = orch.close_task(task_id, req.reason, keep_session=req.keep_session)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail=f"unknown task {task_id}") from exc
        except ConcurrencyConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except CorruptInput as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"status": "closed", "task": _task_dict(task)}

    return app
