"""Iteration history recorder backed by ``ralph-history.json``."""

from __future__ import annotations

import logging
from pathlib import Path

from ralph_loop.state.files import (
    StateFileError,
    load_json_object,
    locked,
    move_aside,
    write_json_atomic,
)
from ralph_loop.state.models import HistoryRecord, IterationRecord, StruggleEvent

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Cumulative counters plus a bounded window of recent iteration records."""

    def __init__(
        self,
        path: Path,
        *,
        window: int = 20,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.path = path
        self.window = window
        self.lock_timeout_seconds = lock_timeout_seconds

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> HistoryRecord:
        """Return the persisted record, or a zero-valued one when absent or unreadable."""

        record, _ = self._read()
        return record

    def ensure_created(self) -> None:
        """Persist a zero-valued record when no history file exists yet."""

        with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
            if not self.path.exists():
                write_json_atomic(self.path, HistoryRecord().to_payload())

    def record_iteration(
        self,
        duration_ms: int,
        struggle_event: StruggleEvent | None = None,
        *,
        iteration_record: IterationRecord | None = None,
    ) -> HistoryRecord:
        """Add one iteration; an unreadable file is moved aside, never overwritten."""

        with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
            record, readable = self._read()
            if not readable:
                kept = move_aside(self.path)
                logger.warning("Moved unreadable history file to %s", kept)
            record.iterations += 1
            record.total_duration_ms += max(0, int(duration_ms))
            if struggle_event is not None:
                record.struggle_indicators.append(struggle_event)
            if iteration_record is not None:
                record.recent_iterations.append(iteration_record)
                if self.window > 0:
                    record.recent_iterations = record.recent_iterations[-self.window :]
            write_json_atomic(self.path, record.to_payload())
        return record

    def clear(self) -> bool:
        """Explicit reset; the loop itself never deletes history."""

        with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            except OSError as error:
                raise StateFileError(f"Cannot delete {self.path}: {error}") from error
        return True

    def _read(self) -> tuple[HistoryRecord, bool]:
        # False means a file exists but could not be used.
        try:
            raw = load_json_object(self.path)
        except (ValueError, TypeError) as error:
            logger.warning("Ignoring unreadable history file %s: %s", self.path, error)
            return HistoryRecord(), False
        if raw is None:
            return HistoryRecord(), True
        try:
            return HistoryRecord.from_payload(raw), True
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring malformed history file %s: %s", self.path, error)
            return HistoryRecord(), False
