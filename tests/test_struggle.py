from __future__ import annotations

from dataclasses import replace

import allure

from ralph_loop.config import StruggleSettings
from ralph_loop.loop.struggle import (
    STRUGGLE_DETECTOR_VERSION,
    detect_struggle,
    output_digest,
)
from ralph_loop.state.models import IterationRecord, StruggleReason

pytestmark = [
    allure.epic("Ralph Loop"),
    allure.feature("Struggle Detector"),
]

_THRESHOLDS = StruggleSettings()


def _iteration(iteration: int, **overrides) -> IterationRecord:
    base = IterationRecord(
        iteration=iteration,
        started_at="2026-01-01T00:00:00+00:00",
        duration_ms=120_000,
        exit_code=0,
        output_digest=output_digest(f"distinct output {iteration}"),
    )
    return replace(base, **overrides)


def test_detector_version_is_stable() -> None:
    assert STRUGGLE_DETECTOR_VERSION == 1


def test_output_digest_ignores_whitespace_layout() -> None:
    assert output_digest("same  output\n") == output_digest(" same output")
    assert output_digest("   \n") == ""


def test_healthy_iteration_has_no_struggle() -> None:
    recent = [_iteration(1), _iteration(2)]

    assert detect_struggle(recent=recent, latest=_iteration(3), thresholds=_THRESHOLDS) is None


def test_timeout_wins_over_every_other_rule() -> None:
    latest = _iteration(2, timed_out=True, exit_code=124, duration_ms=1)

    detection = detect_struggle(recent=[_iteration(1)], latest=latest, thresholds=_THRESHOLDS)

    assert detection is not None
    assert detection.reason == StruggleReason.TIMEOUT_EXCEEDED
    event = detection.to_event(iteration=2, detected_at="2026-01-01T00:00:00+00:00")
    assert event.details["detector_version"] == STRUGGLE_DETECTOR_VERSION
    assert event.details["matched_rule"] == "agent_timed_out"


def test_repeated_output_within_window() -> None:
    digest = output_digest("I am stuck")
    recent = [_iteration(1, output_digest=digest), _iteration(2)]

    detection = detect_struggle(
        recent=recent,
        latest=_iteration(3, output_digest=digest),
        thresholds=_THRESHOLDS,
    )

    assert detection is not None
    assert detection.reason == StruggleReason.REPEATED_OUTPUT


def test_repeated_output_outside_window_is_ignored() -> None:
    digest = output_digest("I am stuck")
    recent = [_iteration(1, output_digest=digest), _iteration(2), _iteration(3)]

    detection = detect_struggle(
        recent=recent,
        latest=_iteration(4, output_digest=digest),
        thresholds=_THRESHOLDS,
    )

    assert detection is None


def test_empty_output_never_counts_as_repeated() -> None:
    recent = [_iteration(1, output_digest="")]

    assert (
        detect_struggle(
            recent=recent,
            latest=_iteration(2, output_digest=""),
            thresholds=_THRESHOLDS,
        )
        is None
    )


def test_repeated_errors_need_full_streak() -> None:
    recent = [_iteration(1, exit_code=1), _iteration(2, exit_code=2)]

    detection = detect_struggle(
        recent=recent,
        latest=_iteration(3, exit_code=1),
        thresholds=_THRESHOLDS,
    )
    assert detection is not None
    assert detection.reason == StruggleReason.REPEATED_ERRORS
    assert detection.streak == 3

    broken = [_iteration(1, exit_code=1), _iteration(2)]
    assert (
        detect_struggle(recent=broken, latest=_iteration(3, exit_code=1), thresholds=_THRESHOLDS)
        is None
    )


def test_no_progress_only_when_tracking_tasks() -> None:
    stalled = {"tracking_tasks": True, "tasks_completed": 0, "tasks_changed": False}
    recent = [_iteration(1, **stalled), _iteration(2, **stalled)]

    detection = detect_struggle(
        recent=recent,
        latest=_iteration(3, **stalled),
        thresholds=_THRESHOLDS,
    )
    assert detection is not None
    assert detection.reason == StruggleReason.NO_PROGRESS

    untracked = [_iteration(1), _iteration(2)]
    assert detect_struggle(recent=untracked, latest=_iteration(3), thresholds=_THRESHOLDS) is None


def test_task_list_edit_counts_as_progress() -> None:
    stalled = {"tracking_tasks": True}
    recent = [_iteration(1, **stalled), _iteration(2, **stalled, tasks_changed=True)]

    assert (
        detect_struggle(
            recent=recent,
            latest=_iteration(3, **stalled),
            thresholds=_THRESHOLDS,
        )
        is None
    )


def test_short_iterations_streak() -> None:
    recent = [_iteration(1, duration_ms=500), _iteration(2, duration_ms=800)]

    detection = detect_struggle(
        recent=recent,
        latest=_iteration(3, duration_ms=200),
        thresholds=_THRESHOLDS,
    )

    assert detection is not None
    assert detection.reason == StruggleReason.SHORT_ITERATIONS
    assert detection.matched_rule == "consecutive_short_iterations"


def test_short_iteration_rule_disabled_with_zero_seconds() -> None:
    thresholds = replace(_THRESHOLDS, short_iteration_seconds=0)
    recent = [_iteration(1, duration_ms=1), _iteration(2, duration_ms=1)]

    assert (
        detect_struggle(recent=recent, latest=_iteration(3, duration_ms=1), thresholds=thresholds)
        is None
    )
