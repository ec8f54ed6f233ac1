"""Domain models for the persisted loop state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Checklist task states, keyed by their bracket marker."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"

    @property
    def marker(self) -> str:
        return _STATUS_MARKERS[self]

    @classmethod
    def from_marker(cls, marker: str) -> TaskStatus:
        return _MARKER_STATUSES[marker.lower()]


_STATUS_MARKERS = {
    TaskStatus.TODO: " ",
    TaskStatus.IN_PROGRESS: "/",
    TaskStatus.DONE: "x",
}
_MARKER_STATUSES = {marker: status for status, marker in _STATUS_MARKERS.items()}


@dataclass(slots=True)
class Task:
    """One checklist line.

    ``index`` is the 1-based position among all tasks in document order and is
    recomputed on every parse; it is not an identifier.
    """

    index: int
    description: str
    status: TaskStatus = TaskStatus.TODO
    depth: int = 0


class StruggleReason(str, Enum):
    """Closed set of struggle tags, in detection priority order."""

    TIMEOUT_EXCEEDED = "timeout_exceeded"
    REPEATED_OUTPUT = "repeated_output"
    REPEATED_ERRORS = "repeated_errors"
    NO_PROGRESS = "no_progress"
    SHORT_ITERATIONS = "short_iterations"


def _struggle_reason(tag: str) -> StruggleReason | str:
    try:
        return StruggleReason(tag)
    except ValueError:
        return tag


@dataclass(slots=True)
class StruggleEvent:
    """One recorded struggle indicator."""

    iteration: int
    reason: StruggleReason | str
    detected_at: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def reason_tag(self) -> str:
        """Tag as persisted; tags unknown to this version are kept verbatim."""

        return self.reason.value if isinstance(self.reason, StruggleReason) else self.reason

    def to_payload(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "reason": self.reason_tag,
            "detectedAt": self.detected_at,
            "details": self.details,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> StruggleEvent:
        return cls(
            iteration=int(raw["iteration"]),
            reason=_struggle_reason(str(raw["reason"])),
            detected_at=str(raw.get("detectedAt", "")),
            details=dict(raw.get("details") or {}),
        )


@dataclass(slots=True)
class IterationRecord:
    """Observable outcome of one finished iteration."""

    iteration: int
    started_at: str
    duration_ms: int
    exit_code: int
    timed_out: bool = False
    tasks_completed: int = 0
    tasks_changed: bool = False
    tracking_tasks: bool = False
    output_digest: str = ""
    completion_detected: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "startedAt": self.started_at,
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "tasksCompleted": self.tasks_completed,
            "tasksChanged": self.tasks_changed,
            "trackingTasks": self.tracking_tasks,
            "outputDigest": self.output_digest,
            "completionDetected": self.completion_detected,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> IterationRecord:
        return cls(
            iteration=int(raw["iteration"]),
            started_at=str(raw.get("startedAt", "")),
            duration_ms=int(raw.get("durationMs", 0)),
            exit_code=int(raw.get("exitCode", 0)),
            timed_out=bool(raw.get("timedOut", False)),
            tasks_completed=int(raw.get("tasksCompleted", 0)),
            tasks_changed=bool(raw.get("tasksChanged", False)),
            tracking_tasks=bool(raw.get("trackingTasks", False)),
            output_digest=str(raw.get("outputDigest", "")),
            completion_detected=bool(raw.get("completionDetected", False)),
        )


@dataclass(slots=True)
class HistoryRecord:
    """Cumulative iteration history persisted as ``ralph-history.json``.

    Top-level keys this version does not know are kept in ``extra`` and written back.
    """

    iterations: int = 0
    total_duration_ms: int = 0
    struggle_indicators: list[StruggleEvent] = field(default_factory=list)
    recent_iterations: list[IterationRecord] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            **self.extra,
            "iterations": self.iterations,
            "totalDurationMs": self.total_duration_ms,
            "struggleIndicators": [event.to_payload() for event in self.struggle_indicators],
            "recentIterations": [record.to_payload() for record in self.recent_iterations],
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> HistoryRecord:
        iterations = raw.get("iterations", 0)
        total_duration_ms = raw.get("totalDurationMs", 0)
        indicators = raw.get("struggleIndicators", [])
        recent = raw.get("recentIterations", [])
        if not isinstance(iterations, int) or iterations < 0:
            raise ValueError("history.iterations must be an integer >= 0")
        if not isinstance(total_duration_ms, int | float) or total_duration_ms < 0:
            raise ValueError("history.totalDurationMs must be a number >= 0")
        if not isinstance(indicators, list) or not isinstance(recent, list):
            raise TypeError("history.struggleIndicators and recentIterations must be arrays")
        return cls(
            iterations=iterations,
            total_duration_ms=int(total_duration_ms),
            struggle_indicators=[StruggleEvent.from_payload(item) for item in indicators],
            recent_iterations=[IterationRecord.from_payload(item) for item in recent],
            extra={key: value for key, value in raw.items() if key not in _HISTORY_KEYS},
        )


_HISTORY_KEYS = frozenset(
    {"iterations", "totalDurationMs", "struggleIndicators", "recentIterations"},
)


@dataclass(slots=True)
class ActiveLoopState:
    """Snapshot of a running loop, visible to ``--status`` from other processes."""

    pid: int
    iteration: int
    min_iterations: int
    max_iterations: int
    completion_promise: str
    tasks_mode: bool
    agent: str
    model: str
    prompt: str
    started_at: str
    active: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "pid": self.pid,
            "iteration": self.iteration,
            "minIterations": self.min_iterations,
            "maxIterations": self.max_iterations,
            "completionPromise": self.completion_promise,
            "tasksMode": self.tasks_mode,
            "agent": self.agent,
            "model": self.model,
            "prompt": self.prompt,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> ActiveLoopState:
        return cls(
            active=bool(raw.get("active", True)),
            pid=int(raw["pid"]),
            iteration=int(raw.get("iteration", 0)),
            min_iterations=int(raw.get("minIterations", 1)),
            max_iterations=int(raw.get("maxIterations", 0)),
            completion_promise=str(raw.get("completionPromise", "")),
            tasks_mode=bool(raw.get("tasksMode", False)),
            agent=str(raw.get("agent", "")),
            model=str(raw.get("model", "")),
            prompt=str(raw.get("prompt", "")),
            started_at=str(raw.get("startedAt", "")),
        )
