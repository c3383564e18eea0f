from __future__ import annotations

import json
import sys
from typing import List, NoReturn

import typer
from dotenv import load_dotenv

from taskorch.core.config import Settings
from taskorch.core.daemon import Orchestrator
from taskorch.core.errors import (
    ConcurrencyConflict,
    CorruptInput,
    HostUnavailable,
    StoreUnavailable,
    TaskNotFound,
    TransientExternalFailure,
)
from taskorch.core.inbox import SOURCE_OPERATOR, SOURCE_WORKER
from taskorch.core.taskfile import NEEDS_INPUT

app = typer.Typer(add_completion=False, help="Reconcile worker sessions against a directory of task files.")

_STATE_COLORS = {
    "assigned": typer.colors.GREEN,
    "needs_input": typer.colors.YELLOW,
    "orphaned": typer.colors.RED,
    "unassigned": typer.colors.BLUE,
}


def _load_env() -> None:
    load_dotenv()


def _settings() -> Settings:
    _load_env()
    return Settings.from_env()


def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from taskorch.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


def _orchestrator() -> Orchestrator:
    return Orchestrator(_settings())


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


def _shorten(text: str, width: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 1] + "…"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        status()


@app.command()
def status() -> None:
    """List tasks with their state, session and summary."""
    orch = _orchestrator()
    try:
        listing = orch.store.list()
    except StoreUnavailable as exc:
        _fail(str(exc))
    try:
        sessions = orch.registry.list_live()
    except (TransientExternalFailure, HostUnavailable) as exc:
        typer.secho(f"session host unavailable: {exc}", fg=typer.colors.YELLOW, err=True)
        sessions = None

    if not listing.tasks and not listing.corrupt:
        typer.echo(f"No tasks in {orch.settings.tasks_dir}")
        return

    for task in listing.sorted_tasks():
        name = task.session or "-"
        if task.session and sessions is not None:
            live = task.session in sessions and sessions[task.session].alive
            name = f"{task.session} ({'live' if live else 'gone'})"
        state = typer.style(f"{task.state:<12}", fg=_STATE_COLORS.get(task.state))
        summary = _shorten(task.summary or task.title, 60)
        typer.echo(f"{task.task_id:<24} {state} {name:<30} {summary}")
    for task_id, exc in sorted(listing.corrupt.items()):
        typer.secho(f"{task_id:<24} {'CORRUPT':<12} {exc.reason}", fg=typer.colors.RED)


@app.command()
def inbox() -> None:
    """List tasks waiting on a human decision."""
    orch = _orchestrator()
    try:
        listing = orch.store.list()
    except StoreUnavailable as exc:
        _fail(str(exc))
    waiting = [t for t in listing.sorted_tasks() if t.state == NEEDS_INPUT]
    if not waiting:
        typer.echo("Nothing needs input.")
        return
    for task in waiting:
        last = task.last_entry()
        typer.secho(task.task_id, fg=typer.colors.YELLOW, bold=True)
        if last is not None:
            typer.echo(f"  {last.ts:%Y-%m-%d %H:%M} [{last.tag}] {last.text}")
        if task.summary:
            typer.echo(f"  {_shorten(task.summary, 100)}")


@app.command()
def jump(name: str = typer.Argument(..., help="Task id or session name")) -> None:
    """Attach to (or switch to) a task's worker session."""
    orch = _orchestrator()
    prefix = orch.settings.session_prefix
    session = name if name.startswith(prefix) else f"{prefix}{name}"
    try:
        exists = orch.host.has_session(session)
    except (TransientExternalFailure, HostUnavailable) as exc:
        _fail(str(exc))
    if not exists:
        typer.secho(f"No session {session}.", fg=typer.colors.RED, err=True)
        try:
            names = sorted(n for n in orch.registry.list_live() if n.startswith(prefix))
        except (TransientExternalFailure, HostUnavailable):
            names = []
        if names:
            typer.echo("Task sessions:")
            for n in names:
                typer.echo(f"  {n}")
        raise typer.Exit(1)
    orch.host.attach(session)


@app.command()
def scan(
    now: bool = typer.Option(False, "--now", help="Run one full pass here instead of asking the daemon"),
) -> None:
    """Force a full reconciliation pass."""
    orch = _orchestrator()
    if not now:
        orch.inbox.request_scan()
        typer.echo("Scan requested.")
        return
    _setup_logging(orch.settings)
    try:
        report = orch.reconciler.run_full()
    finally:
        orch.reconciler.close()
    typer.echo(json.dumps(report.to_dict(), indent=2, default=str))
    if report.aborted:
        raise typer.Exit(1)


@app.command()
def send(
    task_id: str = typer.Argument(..., help="Task id"),
    message: List[str] = typer.Argument(..., help="Message text ('-' reads stdin)"),
    source: str = typer.Option(SOURCE_OPERATOR, "--from", help="worker or operator"),
) -> None:
    """Queue a message for a task."""
    if source not in (SOURCE_OPERATOR, SOURCE_WORKER):
        _fail(f"--from must be '{SOURCE_OPERATOR}' or '{SOURCE_WORKER}'")
    body = sys.stdin.read() if message == ["-"] else " ".join(message)
    body = body.strip()
    if not body:
        _fail("empty message")
    orch = _orchestrator()
    try:
        msg = orch.send(task_id, body, source)
    except TaskNotFound:
        _fail(f"unknown task {task_id}")
    typer.echo(f"Queued {msg.key} for {task_id}")


@app.command()
def close(
    task_id: str = typer.Argument(..., help="Task id"),
    reason: str = typer.Option("closed by operator", "--reason", help="Recorded in the status log"),
    keep_session: bool = typer.Option(False, "--keep-session", help="Leave the worker session running"),
) -> None:
    """Close a task: final log entry, file moved out, session terminated."""
    orch = _orchestrator()
    try:
        task = orch.close_task(task_id, reason, keep_session=keep_session)
    except TaskNotFound:
        _fail(f"unknown task {task_id}")
    except (CorruptInput, ConcurrencyConflict) as exc:
        _fail(str(exc))
    typer.echo(f"Closed {task.task_id}")


@app.command()
def daemon(
    http: bool = typer.Option(False, "--http/--no-http", help="Serve the HTTP intake API"),
) -> None:
    """Run the watcher, ticker and reconciler until interrupted."""
    from taskorch.core.daemon import run_daemon

    settings = _settings()
    _setup_logging(settings)
    raise typer.Exit(run_daemon(settings, http=http))


@app.command()
def version() -> None:
    from taskorch import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
