"""Checklist task store backed by ``ralph-tasks.md``.

The document is kept as an ordered list of lines. Each line is classified on
its own: lines matching ``<indent>- [<marker>] <description>`` become tasks,
everything else (headers, prose, malformed brackets, blank lines) is carried
through verbatim and never raises. Parent/child structure is positional only:
a task belongs to the nearest preceding task with a shallower indentation.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.state.files import (
    ValidationError,
    locked,
    read_text_or_none,
    write_text_atomic,
)
from ralph_loop.state.models import Task, TaskStatus

logger = logging.getLogger(__name__)

INDENT_WIDTH = 2
DOCUMENT_HEADER = "# Ralph Tasks\n\n"

_TASK_LINE = re.compile(
    r"^(?P<indent>[ \t]*)- \[(?P<marker>[ xX/])\]\s*(?P<description>.*?)\s*$",
)


class TaskIndexOutOfRangeError(ValidationError):
    """Requested 1-based task index does not exist."""

    def __init__(self, index: int, count: int) -> None:
        if count == 0:
            message = f"Task index {index} is out of range (no tasks)"
        else:
            message = f"Task index {index} is out of range (1-{count})"
        super().__init__(message)
        self.index = index
        self.count = count


@dataclass(slots=True)
class _Line:
    text: str
    width: int | None
    indent: str = ""
    description: str | None = None
    status: TaskStatus | None = None

    @property
    def is_task(self) -> bool:
        return self.description is not None

    def render(self) -> str:
        if self.description is None or self.status is None:
            return self.text
        return f"{self.indent}- [{self.status.marker}] {self.description}"


def _classify(text: str) -> _Line:
    stripped = text.strip()
    if not stripped:
        return _Line(text=text, width=None)
    leading = text[: len(text) - len(text.lstrip(" \t"))]
    width = len(leading.expandtabs(INDENT_WIDTH))
    match = _TASK_LINE.match(text)
    if match is None or not match.group("description"):
        return _Line(text=text, width=width)
    return _Line(
        text=text,
        width=width,
        indent=match.group("indent"),
        description=match.group("description"),
        status=TaskStatus.from_marker(match.group("marker")),
    )


class TaskDocument:
    """In-memory checklist document with index-based mutations."""

    def __init__(self, lines: list[_Line]) -> None:
        self._lines = lines

    @classmethod
    def parse(cls, text: str) -> TaskDocument:
        return cls([_classify(line) for line in text.splitlines()])

    @property
    def tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for line in self._lines:
            if line.description is None or line.status is None:
                continue
            tasks.append(
                Task(
                    index=len(tasks) + 1,
                    description=line.description,
                    status=line.status,
                    depth=(line.width or 0) // INDENT_WIDTH,
                ),
            )
        return tasks

    def render(self) -> str:
        if not self._lines:
            return ""
        return "\n".join(line.render() for line in self._lines) + "\n"

    def add(self, description: str, *, depth: int = 0) -> Task:
        normalized = normalize_description(description)
        indent = " " * (INDENT_WIDTH * depth)
        if self._lines and self._lines[-1].width is not None and not self._lines[-1].is_task:
            self._lines.append(_classify(""))
        self._lines.append(
            _Line(
                text="",
                width=len(indent),
                indent=indent,
                description=normalized,
                status=TaskStatus.TODO,
            ),
        )
        return self.tasks[-1]

    def remove(self, index: int) -> Task:
        """Remove a task together with every deeper-indented line that follows it."""

        position = self._position(index)
        removed = self.tasks[index - 1]
        own_width = self._lines[position].width or 0
        end = position
        for scan in range(position + 1, len(self._lines)):
            width = self._lines[scan].width
            if width is None:
                continue
            if width <= own_width:
                break
            end = scan
        del self._lines[position : end + 1]
        return removed

    def set_status(self, index: int, status: TaskStatus) -> Task:
        self._lines[self._position(index)].status = status
        return self.tasks[index - 1]

    def _position(self, index: int) -> int:
        positions = [pos for pos, line in enumerate(self._lines) if line.is_task]
        if index < 1 or index > len(positions):
            raise TaskIndexOutOfRangeError(index, len(positions))
        return positions[index - 1]


def parse_tasks(text: str) -> list[Task]:
    """Return the well-formed tasks of a checklist document; never raises."""

    return TaskDocument.parse(text).tasks


def serialize_tasks(tasks: list[Task]) -> str:
    """Render tasks as a bare checklist, indentation reconstructed from depth."""

    return "".join(
        f"{' ' * (INDENT_WIDTH * task.depth)}- [{task.status.marker}] {task.description}\n"
        for task in tasks
    )


def normalize_description(description: str) -> str:
    normalized = " ".join(part.strip() for part in description.splitlines()).strip()
    if not normalized:
        raise ValidationError("Task description must not be empty")
    return normalized


class TaskStore:
    """Persisted checklist; every mutation is a locked read-modify-write cycle."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 10.0) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds

    def exists(self) -> bool:
        return self.path.exists()

    def read_document(self) -> TaskDocument:
        return TaskDocument.parse(read_text_or_none(self.path, errors="replace") or "")

    def list_tasks(self) -> list[Task]:
        return self.read_document().tasks

    @contextmanager
    def transaction(self) -> Iterator[TaskDocument]:
        """Yield the current document under lock and persist it if it changed.

        The file is decoded strictly; a file that is not valid UTF-8 raises
        ``StateFileError`` instead of being rewritten with replacement characters.
        """

        with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
            original = read_text_or_none(self.path)
            document = TaskDocument.parse(original or "")
            yield document
            rendered = document.render()
            if original is None:
                if not rendered:
                    return
                rendered = DOCUMENT_HEADER + rendered
            if rendered != original:
                write_text_atomic(self.path, rendered)

    def add_task(self, description: str) -> Task:
        with self.transaction() as document:
            task = document.add(description)
        logger.info("Added task %d: %s", task.index, task.description)
        return task

    def remove_task(self, index: int) -> Task:
        with self.transaction() as document:
            task = document.remove(index)
        logger.info("Removed task %d: %s", index, task.description)
        return task

    def mark_in_progress(self, index: int) -> Task:
        """Mark one task in progress; other in-progress tasks are left untouched."""

        with self.transaction() as document:
            return document.set_status(index, TaskStatus.IN_PROGRESS)

    def mark_done(self, index: int) -> Task:
        with self.transaction() as document:
            return document.set_status(index, TaskStatus.DONE)
