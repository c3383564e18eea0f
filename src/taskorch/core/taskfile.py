"""Task descriptor model and the markdown file format it is stored in.

A task file is operator-authored markdown. The engine appends a trailer
after a fence line and only ever rewrites that trailer::

    <operator body, preserved byte-for-byte>
    <!-- orch -->
    Session: task-foo
    State: assigned

    ## Summary
    one paragraph

    ## Status
    - 2026-10-18T10:00:00.000000+00:00 [spawn] Spawned worker session task-foo
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import re
from typing import List, Optional

from taskorch.core.errors import CorruptInput

FENCE = "<!-- orch -->"

UNASSIGNED = "unassigned"
ASSIGNED = "assigned"
NEEDS_INPUT = "needs_input"
ORPHANED = "orphaned"
CLOSED = "closed"

LIFECYCLE_STATES = {UNASSIGNED, ASSIGNED, NEEDS_INPUT, ORPHANED, CLOSED}

_MARKERS = ("Session", "Workspace", "Context", "State", "Attempts")
_STATUS_RE = re.compile(r"^- (\S+) \[([^\]\s]+)\] ?(.*)$")
_BODY_MARKER_RE = re.compile(r"^(Workspace|Context):\s*(\S.*?)\s*$", re.MULTILINE)
_MIN_STEP = timedelta(microseconds=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _one_line(text: str) -> str:
    return " ".join(text.split())


@dataclass
class StatusEntry:
    ts: datetime
    tag: str
    text: str

    @property
    def key(self) -> Optional[str]:
        """Dedup key for entries produced by inbox messages, else None."""
        prefix, _, rest = self.tag.partition(":")
        if prefix in ("msg", "obs") and rest:
            return rest
        return None

    def render(self) -> str:
        line = f"- {self.ts.isoformat(timespec='microseconds')} [{self.tag}]"
        return f"{line} {self.text}" if self.text else line


@dataclass
class Task:
    """A parsed task descriptor. The engine owns everything but ``body``."""
    task_id: str
    body: str
    session: Optional[str] = None
    workspace: Optional[str] = None
    context: Optional[str] = None
    state: str = UNASSIGNED
    attempts: int = 0
    summary: str = ""
    status: List[StatusEntry] = field(default_factory=list)

    @property
    def title(self) -> str:
        """First non-blank body line, without markdown heading marks."""
        for line in self.body.splitlines():
            if line.strip():
                return line.strip().lstrip("#").strip()
        return ""

    @property
    def body_workspace(self) -> Optional[str]:
        return _body_marker(self.body, "Workspace")

    @property
    def body_context(self) -> Optional[str]:
        return _body_marker(self.body, "Context")

    @property
    def effective_workspace(self) -> Optional[str]:
        return self.workspace or self.body_workspace

    @property
    def effective_context(self) -> Optional[str]:
        return self.context or self.body_context

    def has_key(self, key: str) -> bool:
        return any(e.key == key for e in self.status)

    def last_entry(self) -> Optional[StatusEntry]:
        return self.status[-1] if self.status else None

    def set_summary(self, text: str) -> None:
        """Replace the summary wholesale; it is always a single paragraph."""
        self.summary = _one_line(text)

    def append_status(self, tag: str, text: str, now: Optional[datetime] = None) -> StatusEntry:
        """Append a log entry, keeping timestamps strictly increasing."""
        ts = now or _now()
        last = self.last_entry()
        if last is not None and ts <= last.ts:
            ts = last.ts + _MIN_STEP
        entry = StatusEntry(ts=ts, tag=tag, text=_one_line(text))
        self.status.append(entry)
        return entry


def _body_marker(body: str, name: str) -> Optional[str]:
    for match in _BODY_MARKER_RE.finditer(body):
        if match.group(1) == name:
            return match.group(2)
    return None


def _split_fence(task_id: str, text: str) -> tuple[str, Optional[list[str]]]:
    lines = text.splitlines(keepends=True)
    offset = 0
    fence_at: Optional[int] = None
    fence_line = 0
    for idx, line in enumerate(lines):
        if line.rstrip() == FENCE:
            if fence_at is not None:
                raise CorruptInput(task_id, "more than one trailer fence")
            fence_at = offset
            fence_line = idx
        offset += len(line)
    if fence_at is None:
        return text, None
    body = text[:fence_at]
    # the renderer always puts exactly one newline between body and fence
    if body.endswith("\n"):
        body = body[:-1]
    trailer = [line.rstrip("\r\n") for line in lines[fence_line + 1:]]
    return body, trailer


def parse_task(task_id: str, text: str) -> Task:
    """Parse a task file. Raises CorruptInput on a malformed trailer."""
    body, trailer = _split_fence(task_id, text)
    task = Task(task_id=task_id, body=body)
    if trailer is None:
        return task

    section = "header"
    summary_lines: list[str] = []
    for raw in trailer:
        line = raw.rstrip()
        if line.startswith("## "):
            heading = line[3:].strip()
            if heading == "Summary":
                section = "summary"
            elif heading == "Status":
                section = "status"
            else:
                raise CorruptInput(task_id, f"unknown trailer section {heading!r}")
            continue

        if section == "header":
            if not line.strip():
                continue
            name, sep, value = line.partition(":")
            if not sep or name not in _MARKERS:
                raise CorruptInput(task_id, f"unrecognized trailer line {line!r}")
            _apply_marker(task, name, value.strip())
        elif section == "summary":
            summary_lines.append(line)
        else:
            if not line.strip():
                continue
            task.status.append(_parse_status_line(task_id, line, task.last_entry()))

    task.summary = "\n".join(_unescape(line) for line in summary_lines).strip()
    return task


def _apply_marker(task: Task, name: str, value: str) -> None:
    if name == "Session":
        task.session = value or None
    elif name == "Workspace":
        task.workspace = value or None
    elif name == "Context":
        task.context = value or None
    elif name == "State":
        if value not in LIFECYCLE_STATES:
            raise CorruptInput(task.task_id, f"unknown state {value!r}")
        task.state = value
    elif name == "Attempts":
        try:
            task.attempts = int(value)
        except ValueError:
            raise CorruptInput(task.task_id, f"attempts is not an integer: {value!r}") from None


def _parse_status_line(task_id: str, line: str, previous: Optional[StatusEntry]) -> StatusEntry:
    match = _STATUS_RE.match(line)
    if not match:
        raise CorruptInput(task_id, f"malformed status line {line!r}")
    try:
        ts = datetime.fromisoformat(match.group(1))
    except ValueError:
        raise CorruptInput(task_id, f"bad status timestamp {match.group(1)!r}") from None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if previous is not None and ts <= previous.ts:
        raise CorruptInput(task_id, "status entries are not in timestamp order")
    return StatusEntry(ts=ts, tag=match.group(2), text=match.group(3))


def _escape(line: str) -> str:
    # summary text must never read as a heading, the fence or an escape
    if line.startswith(("#", "\\")) or line.rstrip() == FENCE:
        return "\\" + line
    return line


def _unescape(line: str) -> str:
    return line[1:] if line.startswith("\\") else line


def render_task(task: Task) -> str:
    """Render a task back to file text; the body is emitted unchanged."""
    lines = [FENCE]
    if task.session:
        lines.append(f"Session: {task.session}")
    if task.workspace:
        lines.append(f"Workspace: {task.workspace}")
    if task.context:
        lines.append(f"Context: {task.context}")
    lines.append(f"State: {task.state}")
    if task.attempts:
        lines.append(f"Attempts: {task.attempts}")
    lines.append("")
    lines.append("## Summary")
    if task.summary:
        lines.extend(_escape(line) for line in task.summary.splitlines())
    lines.append("")
    lines.append("## Status")
    lines.extend(entry.render() for entry in task.status)
    return task.body + "\n" + "\n".join(lines) + "\n"
