"""Persisted per-project loop state: tasks, context, history and the active loop marker."""

from ralph_loop.state.context import ContextLog
from ralph_loop.state.files import RalphError, StateFileError, ValidationError
from ralph_loop.state.history import HistoryRecorder
from ralph_loop.state.loop_state import LoopStateStore
from ralph_loop.state.tasks import TaskIndexOutOfRangeError, TaskStore

__all__ = [
    "ContextLog",
    "HistoryRecorder",
    "LoopStateStore",
    "RalphError",
    "StateFileError",
    "TaskIndexOutOfRangeError",
    "TaskStore",
    "ValidationError",
]
