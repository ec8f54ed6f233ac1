"""Iteration loop that drives the external agent until the work is done."""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ralph_loop.config import StruggleSettings
from ralph_loop.loop.agents import ResolvedAgent
from ralph_loop.loop.backend import (
    AgentBackend,
    AgentInvocationError,
    AgentRunRequest,
    AgentRunResult,
)
from ralph_loop.loop.prompt import build_iteration_prompt, promise_detected
from ralph_loop.loop.struggle import detect_struggle, output_digest
from ralph_loop.state import ContextLog, HistoryRecorder, LoopStateStore, TaskStore
from ralph_loop.state.files import utc_now
from ralph_loop.state.models import (
    ActiveLoopState,
    IterationRecord,
    StruggleEvent,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)


class LoopStatus(str, Enum):
    """Loop lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    ABORTED = "aborted"
    FAILED = "failed"


_EXIT_CODES = {
    LoopStatus.COMPLETED: 0,
    LoopStatus.MAX_ITERATIONS_REACHED: 0,
    LoopStatus.ABORTED: 130,
    LoopStatus.FAILED: 1,
}


@dataclass(slots=True)
class LoopOptions:
    """Per-invocation loop parameters."""

    prompt: str
    agent: ResolvedAgent
    max_iterations: int = 0
    min_iterations: int = 1
    completion_promise: str = "COMPLETE"
    task_promise: str = "READY_FOR_NEXT_TASK"
    tasks_mode: bool = False
    timeout_seconds: int = 0
    stream_output: bool = True
    graceful_shutdown_seconds: int = 10


@dataclass(slots=True)
class LoopState:
    """Transient state of one controller invocation."""

    iteration: int = 0
    elapsed_ms: int = 0
    status: LoopStatus = LoopStatus.IDLE
    stop_reason: str | None = None
    started_at: str = ""

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self.status, 1)


class LoopController:
    """Runs prompt-build, agent invocation and state update until a stop condition holds."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        context: ContextLog,
        history: HistoryRecorder,
        loop_state: LoopStateStore,
        backend: AgentBackend,
        thresholds: StruggleSettings,
        prompt_file: Path | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.tasks = tasks
        self.context = context
        self.history = history
        self.loop_state = loop_state
        self.backend = backend
        self.thresholds = thresholds
        self.prompt_file = prompt_file
        self._on_progress = on_progress or (lambda _line: None)
        self._stop_requested = False
        self._stop_reason: str | None = None
        self._active: ActiveLoopState | None = None

    def run(self, options: LoopOptions) -> LoopState:
        """Run the loop to a terminal state; the active-loop marker is removed on exit."""

        state = LoopState(status=LoopStatus.RUNNING, started_at=utc_now().isoformat())
        self._active = ActiveLoopState(
            pid=os.getpid(),
            iteration=0,
            min_iterations=options.min_iterations,
            max_iterations=options.max_iterations,
            completion_promise=options.completion_promise,
            tasks_mode=options.tasks_mode,
            agent=options.agent.agent,
            model=options.agent.model,
            prompt=options.prompt,
            started_at=state.started_at,
        )
        self.loop_state.claim(self._active)
        logger.info(
            "Loop started: agent=%s max_iterations=%d tasks_mode=%s",
            options.agent.agent,
            options.max_iterations,
            options.tasks_mode,
        )
        try:
            self.history.ensure_created()
            with self._signal_handlers():
                while state.status == LoopStatus.RUNNING:
                    self._run_iteration(options=options, state=state)
        finally:
            self.loop_state.clear()
            self._active = None

        logger.info(
            "Loop finished: status=%s iterations=%d reason=%s",
            state.status.value,
            state.iteration,
            state.stop_reason,
        )
        return state

    def request_stop(self, reason: str = "abort requested") -> None:
        """Ask the loop to stop; the running agent gets its graceful shutdown window."""

        if self._stop_requested:
            return
        self._stop_requested = True
        self._stop_reason = reason
        logger.warning("Stop requested: %s", reason)

    def _run_iteration(self, *, options: LoopOptions, state: LoopState) -> None:
        if self._stop_requested:
            state.status = LoopStatus.ABORTED
            state.stop_reason = self._stop_reason
            return

        iteration = state.iteration + 1
        if options.tasks_mode:
            self._ensure_current_task()
        before = self.tasks.read_document()
        tasks_before = before.tasks
        prompt = build_iteration_prompt(
            base_prompt=options.prompt,
            iteration=iteration,
            max_iterations=options.max_iterations,
            min_iterations=options.min_iterations,
            completion_promise=options.completion_promise,
            context=self.context.read(),
            tasks=tasks_before,
            tasks_mode=options.tasks_mode,
            task_promise=options.task_promise,
        )

        limit = f"/{options.max_iterations}" if options.max_iterations > 0 else ""
        self._on_progress(f"Iteration {iteration}{limit} started")
        started_at = utc_now()
        try:
            result = self.backend.run(
                AgentRunRequest(
                    prompt=prompt,
                    agent=options.agent.agent,
                    model=options.agent.model,
                    command_template=options.agent.command_template,
                    timeout_seconds=options.timeout_seconds,
                    prompt_file=(
                        self.prompt_file
                        if "{prompt_file}" in options.agent.command_template
                        else None
                    ),
                    stream_output=options.stream_output,
                    shutdown_requested=lambda: self._stop_requested,
                    graceful_shutdown_seconds=options.graceful_shutdown_seconds,
                ),
            )
        except AgentInvocationError as error:
            logger.error("Agent invocation failed on iteration %d: %s", iteration, error)
            state.status = LoopStatus.FAILED
            state.stop_reason = str(error)
            return

        state.iteration = iteration
        state.elapsed_ms += result.elapsed_ms
        completion = promise_detected(result.output, options.completion_promise)
        if options.tasks_mode and promise_detected(result.output, options.task_promise):
            self._complete_current_tasks()

        after = self.tasks.read_document()
        tasks_after = after.tasks
        record = IterationRecord(
            iteration=iteration,
            started_at=started_at.isoformat(),
            duration_ms=result.elapsed_ms,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            tasks_completed=max(0, _done_count(tasks_after) - _done_count(tasks_before)),
            tasks_changed=after.render() != before.render(),
            tracking_tasks=bool(tasks_after),
            output_digest=output_digest(result.output),
            completion_detected=completion,
        )
        event = self._detect_struggle(record)
        self.history.record_iteration(result.elapsed_ms, event, iteration_record=record)
        self.context.append(_iteration_summary(record, event))
        if self._active is not None:
            self._active.iteration = iteration
            self.loop_state.write(self._active)

        self._on_progress(
            f"Iteration {iteration}{limit} finished: exit_code={result.exit_code} "
            f"duration={result.elapsed_ms / 1000:.1f}s tasks_completed={record.tasks_completed}",
        )
        state.status, state.stop_reason = self._evaluate_stop(
            options=options,
            iteration=iteration,
            result=result,
            completion=completion,
            tasks=tasks_after,
        )

    def _detect_struggle(self, record: IterationRecord) -> StruggleEvent | None:
        detection = detect_struggle(
            recent=self.history.load().recent_iterations,
            latest=record,
            thresholds=self.thresholds,
        )
        if detection is None:
            return None
        logger.warning(
            "Struggle detected on iteration %d: %s (streak %d)",
            record.iteration,
            detection.reason.value,
            detection.streak,
        )
        self._on_progress(
            f"Struggle indicator: {detection.reason.value} (streak {detection.streak})",
        )
        return detection.to_event(iteration=record.iteration, detected_at=utc_now().isoformat())

    def _evaluate_stop(
        self,
        *,
        options: LoopOptions,
        iteration: int,
        result: AgentRunResult,
        completion: bool,
        tasks: list[Task],
    ) -> tuple[LoopStatus, str | None]:
        if self._stop_requested or result.aborted:
            return LoopStatus.ABORTED, self._stop_reason or "agent aborted"
        if iteration >= options.min_iterations:
            if completion:
                return LoopStatus.COMPLETED, "completion promise detected"
            if tasks and all(task.status == TaskStatus.DONE for task in tasks):
                return LoopStatus.COMPLETED, "all tasks done"
        if options.max_iterations > 0 and iteration >= options.max_iterations:
            return LoopStatus.MAX_ITERATIONS_REACHED, f"reached {options.max_iterations} iterations"
        return LoopStatus.RUNNING, None

    def _ensure_current_task(self) -> None:
        with self.tasks.transaction() as document:
            tasks = document.tasks
            if any(task.status == TaskStatus.IN_PROGRESS for task in tasks):
                return
            for task in tasks:
                if task.status == TaskStatus.TODO:
                    document.set_status(task.index, TaskStatus.IN_PROGRESS)
                    logger.info("Task %d in progress: %s", task.index, task.description)
                    return

    def _complete_current_tasks(self) -> None:
        with self.tasks.transaction() as document:
            for task in document.tasks:
                if task.status == TaskStatus.IN_PROGRESS:
                    document.set_status(task.index, TaskStatus.DONE)
                    logger.info("Task %d done: %s", task.index, task.description)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=f"received {name}")

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _done_count(tasks: list[Task]) -> int:
    return sum(1 for task in tasks if task.status == TaskStatus.DONE)


def _iteration_summary(record: IterationRecord, event: StruggleEvent | None) -> str:
    lines = [
        f"Iteration {record.iteration}: exit code {record.exit_code}, "
        f"{record.duration_ms / 1000:.1f}s, tasks completed {record.tasks_completed}"
        + (", timed out" if record.timed_out else ""),
    ]
    if event is not None:
        lines.append(
            f"Struggle indicator: {event.reason.value}. "
            "The previous approach is not working; try a different one.",
        )
    return "\n".join(lines)
