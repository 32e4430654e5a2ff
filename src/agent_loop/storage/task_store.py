"""Markdown-backed task queue with per-entry status markers.

Persisted form::

    ## In Progress
    - [.] Refactor the config loader

    ## Pending
    - [ ] Add retries to the webhook client

    ## Scheduled
    - [@2026-11-02] Rotate API keys

    ## Waiting On User
    - [u] Confirm the release date

    ## Completed
    - [x] Write the setup command

Only unindented list items with a recognised marker are tasks. Headings,
prose, nested notes and fenced code blocks are preserved verbatim when the
document is rewritten.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path

from agent_loop.storage.common import read_text_or_empty, write_text_atomic

logger = logging.getLogger(__name__)

_TASK_LINE = re.compile(r"^[-*]\s+\[(?P<marker>[^\]]*)\]\s+(?P<text>\S.*?)\s*$")
_HEADING_LINE = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<title>.*?)\s*#*\s*$")
_FENCE_PREFIXES = ("```", "~~~")


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WAITING_ON_USER = "waiting_on_user"
    SCHEDULED = "scheduled"


SECTION_TITLES: dict[TaskStatus, str] = {
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.PENDING: "Pending",
    TaskStatus.SCHEDULED: "Scheduled",
    TaskStatus.WAITING_ON_USER: "Waiting On User",
    TaskStatus.COMPLETED: "Completed",
}

_SECTION_KEYS: dict[str, TaskStatus] = {
    "inprogress": TaskStatus.IN_PROGRESS,
    "pending": TaskStatus.PENDING,
    "todo": TaskStatus.PENDING,
    "scheduled": TaskStatus.SCHEDULED,
    "waitingonuser": TaskStatus.WAITING_ON_USER,
    "waiting": TaskStatus.WAITING_ON_USER,
    "completed": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
}


class TaskTransitionError(ValueError):
    """Raised for status changes the queue never allows."""


@dataclass(slots=True)
class Task:
    """One task entry as it appears in the store."""

    status: TaskStatus
    text: str
    line_no: int
    scheduled_for: date | None = None

    @property
    def marker(self) -> str:
        return status_marker(self.status, self.scheduled_for)

    def render(self) -> str:
        return f"- [{self.marker}] {self.text}"


@dataclass(slots=True)
class TaskCounts:
    """Number of tasks per status."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    waiting_on_user: int = 0
    scheduled: int = 0

    @property
    def active(self) -> int:
        """Tasks the worker can act on right now."""

        return self.pending + self.in_progress

    @property
    def total(self) -> int:
        return (
            self.pending
            + self.in_progress
            + self.completed
            + self.waiting_on_user
            + self.scheduled
        )


def status_marker(status: TaskStatus, scheduled_for: date | None = None) -> str:
    """Return the checkbox marker used for ``status``."""

    if status == TaskStatus.PENDING:
        return " "
    if status == TaskStatus.IN_PROGRESS:
        return "."
    if status == TaskStatus.COMPLETED:
        return "x"
    if status == TaskStatus.WAITING_ON_USER:
        return "u"
    if scheduled_for is None:
        raise ValueError("Scheduled tasks require a date.")
    return f"@{scheduled_for.isoformat()}"


def parse_marker(marker: str) -> tuple[TaskStatus, date | None] | None:
    """Map a raw checkbox marker to a status; ``None`` for unknown markers."""

    if marker == " ":
        return TaskStatus.PENDING, None
    normalized = marker.strip()
    if normalized == ".":
        return TaskStatus.IN_PROGRESS, None
    if normalized in {"x", "X"}:
        return TaskStatus.COMPLETED, None
    if normalized in {"u", "U"}:
        return TaskStatus.WAITING_ON_USER, None
    if normalized.startswith("@"):
        try:
            return TaskStatus.SCHEDULED, date.fromisoformat(normalized[1:])
        except ValueError:
            return None
    return None


class TaskDocument:
    """Parsed task store document that can be mutated and rendered back."""

    def __init__(self, lines: list[str], *, trailing_newline: bool = True) -> None:
        self.lines = lines
        self.trailing_newline = trailing_newline
        self.tasks: list[Task] = []
        self.ignored_lines = 0
        self._reindex()

    @classmethod
    def parse(cls, text: str) -> TaskDocument:
        return cls(text.splitlines(), trailing_newline=text.endswith("\n") or not text)

    def render(self) -> str:
        body = "\n".join(self.lines)
        if self.trailing_newline and body:
            return body + "\n"
        return body

    def counts(self) -> TaskCounts:
        counts = TaskCounts()
        for task in self.tasks:
            setattr(counts, task.status.value, getattr(counts, task.status.value) + 1)
        return counts

    def find(self, text: str) -> Task | None:
        needle = _normalize_text(text)
        for task in self.tasks:
            if _normalize_text(task.text) == needle:
                return task
        return None

    def by_status(self, status: TaskStatus) -> list[Task]:
        return [task for task in self.tasks if task.status == status]

    def completed_texts(self) -> set[str]:
        return {_normalize_text(task.text) for task in self.by_status(TaskStatus.COMPLETED)}

    def all_texts(self) -> set[str]:
        return {_normalize_text(task.text) for task in self.tasks}

    def current_task(self) -> Task | None:
        """First in-progress task, otherwise the first pending one."""

        in_progress = self.by_status(TaskStatus.IN_PROGRESS)
        if in_progress:
            return in_progress[0]
        pending = self.by_status(TaskStatus.PENDING)
        return pending[0] if pending else None

    def add(
        self,
        text: str,
        *,
        status: TaskStatus = TaskStatus.PENDING,
        scheduled_for: date | None = None,
    ) -> Task | None:
        """Append a task to its status section; return ``None`` if the text already exists."""

        cleaned = " ".join(text.split())
        if not cleaned:
            raise ValueError("Task text must be non-empty.")
        if self.find(cleaned) is not None:
            return None
        line = f"- [{status_marker(status, scheduled_for)}] {cleaned}"
        self._insert_into_section(status, line)
        return self.find(cleaned)

    def set_status(
        self,
        text: str,
        status: TaskStatus,
        *,
        scheduled_for: date | None = None,
    ) -> Task:
        """Move an existing task to ``status``; completed tasks are never re-queued."""

        task = self.find(text)
        if task is None:
            raise KeyError(f"Task not found: {text!r}")
        if task.status == TaskStatus.COMPLETED and status != TaskStatus.COMPLETED:
            raise TaskTransitionError(
                f"Completed task cannot move back to {status.value}: {task.text!r}",
            )
        if task.status == status and task.scheduled_for == scheduled_for:
            return task
        line = f"- [{status_marker(status, scheduled_for)}] {task.text}"
        if self._section_of(task.line_no) == status:
            self.lines[task.line_no] = line
            self._reindex()
        else:
            del self.lines[task.line_no]
            self._reindex()
            self._insert_into_section(status, line)
        updated = self.find(task.text)
        if updated is None:  # pragma: no cover - line was just written
            raise RuntimeError(f"Task vanished during status update: {task.text!r}")
        return updated

    def promote_due(self, today: date) -> list[Task]:
        """Move scheduled tasks whose date has arrived to pending."""

        due = [
            task
            for task in self.by_status(TaskStatus.SCHEDULED)
            if task.scheduled_for is not None and task.scheduled_for <= today
        ]
        return [self.set_status(task.text, TaskStatus.PENDING) for task in due]

    def _insert_into_section(self, status: TaskStatus, line: str) -> None:
        heading_index = self._find_section_heading(status)
        if heading_index is None:
            while self.lines and not self.lines[-1].strip():
                self.lines.pop()
            if self.lines:
                self.lines.append("")
            self.lines.extend([f"## {SECTION_TITLES[status]}", line])
        else:
            end = self._section_end(heading_index)
            insert_at = heading_index + 1
            for index in range(heading_index + 1, end):
                if self.lines[index].strip():
                    insert_at = index + 1
            self.lines.insert(insert_at, line)
        self._reindex()

    def _find_section_heading(self, status: TaskStatus) -> int | None:
        for index, line in enumerate(self.lines):
            match = _HEADING_LINE.match(line)
            if match and _section_key(match.group("title")) == status:
                return index
        return None

    def _section_end(self, heading_index: int) -> int:
        match = _HEADING_LINE.match(self.lines[heading_index])
        level = len(match.group("hashes")) if match else 6
        for index in range(heading_index + 1, len(self.lines)):
            other = _HEADING_LINE.match(self.lines[index])
            if other and len(other.group("hashes")) <= level:
                return index
        return len(self.lines)

    def _section_of(self, line_no: int) -> TaskStatus | None:
        for index in range(line_no, -1, -1):
            match = _HEADING_LINE.match(self.lines[index])
            if match:
                return _section_key(match.group("title"))
        return None

    def _reindex(self) -> None:
        tasks: list[Task] = []
        ignored = 0
        in_fence = False
        for index, line in enumerate(self.lines):
            stripped = line.strip()
            if stripped.startswith(_FENCE_PREFIXES):
                in_fence = not in_fence
                continue
            if in_fence:
                continue
            match = _TASK_LINE.match(line)
            if match is None:
                if stripped.startswith(("- [", "* [")):
                    ignored += 1
                continue
            parsed = parse_marker(match.group("marker"))
            if parsed is None:
                ignored += 1
                continue
            status, scheduled_for = parsed
            tasks.append(
                Task(
                    status=status,
                    text=match.group("text"),
                    line_no=index,
                    scheduled_for=scheduled_for,
                ),
            )
        self.tasks = tasks
        self.ignored_lines = ignored


class TaskStore:
    """File-backed task queue."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def read_text(self) -> str:
        return read_text_or_empty(self.path)

    def load(self) -> TaskDocument:
        document = TaskDocument.parse(self.read_text())
        if document.ignored_lines:
            logger.debug(
                "Task store %s has %d unrecognised checkbox lines (not counted as tasks)",
                self.path,
                document.ignored_lines,
            )
        return document

    def save(self, document: TaskDocument) -> None:
        write_text_atomic(self.path, document.render())

    def counts(self) -> TaskCounts:
        return self.load().counts()

    def add_tasks(
        self,
        texts: list[str],
        *,
        status: TaskStatus = TaskStatus.PENDING,
        scheduled_for: date | None = None,
    ) -> list[Task]:
        """Append tasks not already present; return the ones actually added."""

        document = self.load()
        added: list[Task] = []
        for text in texts:
            task = document.add(text, status=status, scheduled_for=scheduled_for)
            if task is not None:
                added.append(task)
        if added:
            self.save(document)
        return added

    def set_status(
        self,
        text: str,
        status: TaskStatus,
        *,
        scheduled_for: date | None = None,
    ) -> Task:
        document = self.load()
        task = document.set_status(text, status, scheduled_for=scheduled_for)
        self.save(document)
        return task


def _normalize_text(text: str) -> str:
    return " ".join(text.split()).casefold()


def _section_key(title: str) -> TaskStatus | None:
    return _SECTION_KEYS.get(re.sub(r"[^a-z]", "", title.lower()))
