"""Deterministic struggle detection over consecutive iteration outcomes."""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from ralph_loop.config import StruggleSettings
from ralph_loop.state.models import IterationRecord, StruggleEvent, StruggleReason

STRUGGLE_DETECTOR_VERSION = 1


@dataclass(slots=True)
class StruggleDetection:
    """Normalized detection result."""

    reason: StruggleReason
    matched_rule: str
    streak: int

    def to_event(self, *, iteration: int, detected_at: str) -> StruggleEvent:
        """Build the history record for this detection."""

        return StruggleEvent(
            iteration=iteration,
            reason=self.reason,
            detected_at=detected_at,
            details={
                "detector_version": STRUGGLE_DETECTOR_VERSION,
                "matched_rule": self.matched_rule,
                "streak": self.streak,
            },
        )


def output_digest(output: str) -> str:
    """Whitespace-insensitive fingerprint of agent output; empty output has none."""

    normalized = " ".join(output.split())
    if not normalized:
        return ""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def detect_struggle(
    *,
    recent: Sequence[IterationRecord],
    latest: IterationRecord,
    thresholds: StruggleSettings,
) -> StruggleDetection | None:
    """Classify the latest iteration, given earlier ones oldest-first."""

    if latest.timed_out:
        return StruggleDetection(
            reason=StruggleReason.TIMEOUT_EXCEEDED,
            matched_rule="agent_timed_out",
            streak=_streak(recent, latest, lambda record: record.timed_out),
        )

    window = recent[-thresholds.repeated_output_window :]
    if latest.output_digest and any(
        record.output_digest == latest.output_digest for record in window
    ):
        return StruggleDetection(
            reason=StruggleReason.REPEATED_OUTPUT,
            matched_rule="output_matches_recent_iteration",
            streak=_streak(
                recent,
                latest,
                lambda record: record.output_digest == latest.output_digest,
            ),
        )

    streak = _streak(recent, latest, lambda record: record.exit_code != 0)
    if streak >= thresholds.repeated_error_iterations:
        return StruggleDetection(
            reason=StruggleReason.REPEATED_ERRORS,
            matched_rule="consecutive_nonzero_exit",
            streak=streak,
        )

    if latest.tracking_tasks:
        streak = _streak(recent, latest, _made_no_progress)
        if streak >= thresholds.no_progress_iterations:
            return StruggleDetection(
                reason=StruggleReason.NO_PROGRESS,
                matched_rule="task_list_unchanged",
                streak=streak,
            )

    if thresholds.short_iteration_seconds > 0:
        limit_ms = thresholds.short_iteration_seconds * 1000
        streak = _streak(
            recent,
            latest,
            lambda record: record.duration_ms < limit_ms and not record.completion_detected,
        )
        if streak >= thresholds.short_iterations:
            return StruggleDetection(
                reason=StruggleReason.SHORT_ITERATIONS,
                matched_rule="consecutive_short_iterations",
                streak=streak,
            )

    return None


def _made_no_progress(record: IterationRecord) -> bool:
    return (
        record.tracking_tasks
        and record.tasks_completed == 0
        and not record.tasks_changed
        and not record.completion_detected
    )


def _streak(
    recent: Sequence[IterationRecord],
    latest: IterationRecord,
    predicate: Callable[[IterationRecord], bool],
) -> int:
    if not predicate(latest):
        return 0
    count = 1
    for record in reversed(recent):
        if not predicate(record):
            break
        count += 1
    return count
