"""Controllers for ralph CLI operations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.loop.agents import resolve_agent
from ralph_loop.loop.backend import CliAgentBackend
from ralph_loop.loop.backend.cli_backend import build_run_args
from ralph_loop.loop.controller import LoopController, LoopOptions, LoopStatus
from ralph_loop.loop.prompt import promise_tag
from ralph_loop.state import ContextLog, HistoryRecorder, LoopStateStore, TaskStore
from ralph_loop.state.files import ValidationError, read_text_or_none
from ralph_loop.state.models import Task

logger = logging.getLogger(__name__)

RECENT_STRUGGLE_LINES = 5
_PROMPT_PREVIEW_CHARS = 80


class PromptError(ValidationError):
    """Loop invocation has no usable prompt."""


@dataclass(slots=True)
class StatusCommand:
    """CLI input for loop status."""

    state_dir: Path | None = None
    include_tasks: bool = False


@dataclass(slots=True)
class AddContextCommand:
    """CLI input for appending an operator note."""

    text: str
    state_dir: Path | None = None


@dataclass(slots=True)
class ClearContextCommand:
    """CLI input for dropping the context log."""

    state_dir: Path | None = None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for appending a task."""

    description: str
    state_dir: Path | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for listing tasks."""

    state_dir: Path | None = None


@dataclass(slots=True)
class RemoveTaskCommand:
    """CLI input for removing a task and its subtasks."""

    index: int
    state_dir: Path | None = None


@dataclass(slots=True)
class RunLoopCommand:
    """CLI input for the main loop; ``None`` values fall back to settings."""

    prompt: str = ""
    prompt_file: Path | None = None
    max_iterations: int | None = None
    min_iterations: int | None = None
    completion_promise: str | None = None
    task_promise: str | None = None
    tasks_mode: bool = False
    agent: str | None = None
    model: str | None = None
    timeout_seconds: int | None = None
    stream_output: bool | None = None
    state_dir: Path | None = None


@dataclass(slots=True)
class LoopRunResult:
    """Loop outcome to render in CLI."""

    lines: list[str]
    status: LoopStatus
    exit_code: int
    stop_reason: str | None = None


@dataclass(slots=True)
class _Stores:
    tasks: TaskStore
    context: ContextLog
    history: HistoryRecorder
    loop_state: LoopStateStore


class RalphCliController:
    """Coordinates task, context, status and loop CLI operations."""

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.state_dir)
        stores = _stores(settings)

        active = stores.loop_state.read()
        if active is None:
            lines = ["No active loop"]
        else:
            limit = f"/{active.max_iterations}" if active.max_iterations > 0 else ""
            model = f" model={active.model}" if active.model else ""
            lines = [
                f"Active loop: pid={active.pid} started={active.started_at}",
                f"Iteration: {active.iteration}{limit} (min {active.min_iterations})",
                f"Agent: {active.agent}{model}",
                f"Tasks mode: {'on' if active.tasks_mode else 'off'}",
                f"Completion promise: {promise_tag(active.completion_promise)}",
                f"Prompt: {_preview(active.prompt)}",
            ]

        if stores.history.exists():
            history = stores.history.load()
            lines.append(
                f"History: iterations={history.iterations} "
                f"total_duration={history.total_duration_ms / 1000:.1f}s "
                f"struggle_indicators={len(history.struggle_indicators)}",
            )
            for event in history.struggle_indicators[-RECENT_STRUGGLE_LINES:]:
                lines.append(f"- iteration {event.iteration}: {event.reason_tag}")
        else:
            lines.append("History: none")

        context = stores.context.read()
        lines.append(f"Context: {'present' if context else 'none'}")

        if command.include_tasks:
            lines.append("Tasks:")
            lines.extend(_render_tasks(stores.tasks.list_tasks()))
        return lines

    def add_context(self, command: AddContextCommand) -> list[str]:
        if not command.text.strip():
            raise ValidationError("Context text must not be empty")
        settings = _settings(command.state_dir)
        _stores(settings).context.append(command.text)
        return [f"Context added to {settings.context_path}"]

    def clear_context(self, command: ClearContextCommand) -> list[str]:
        settings = _settings(command.state_dir)
        if _stores(settings).context.clear():
            return ["Context cleared"]
        return ["No context to clear"]

    def add_task(self, command: AddTaskCommand) -> list[str]:
        task = _stores(_settings(command.state_dir)).tasks.add_task(command.description)
        return [f"Added task {task.index}: {task.description}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        return _render_tasks(_stores(_settings(command.state_dir)).tasks.list_tasks())

    def remove_task(self, command: RemoveTaskCommand) -> list[str]:
        task = _stores(_settings(command.state_dir)).tasks.remove_task(command.index)
        return [f"Removed task {command.index}: {task.description}"]

    def run_loop(
        self,
        command: RunLoopCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> LoopRunResult:
        """Validate inputs, then drive the agent until the loop reaches a terminal state."""

        settings = _settings(command.state_dir)
        prompt = _resolve_prompt(command)
        options = _loop_options(command=command, settings=settings, prompt=prompt)

        stores = _stores(settings)
        controller = LoopController(
            tasks=stores.tasks,
            context=stores.context,
            history=stores.history,
            loop_state=stores.loop_state,
            backend=CliAgentBackend(),
            thresholds=settings.struggle,
            prompt_file=settings.prompt_path,
            on_progress=on_progress,
        )
        state = controller.run(options)

        lines = [
            f"Loop {state.status.value}: iterations={state.iteration} "
            f"elapsed={state.elapsed_ms / 1000:.1f}s",
        ]
        if state.stop_reason:
            lines.append(f"Reason: {state.stop_reason}")
        return LoopRunResult(
            lines=lines,
            status=state.status,
            exit_code=state.exit_code,
            stop_reason=state.stop_reason,
        )


def _settings(state_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(state_dir=state_dir)
        settings.validate()
    except ValueError as error:
        raise ValidationError(f"Invalid configuration: {error}") from error
    return settings


def _stores(settings: Settings) -> _Stores:
    return _Stores(
        tasks=TaskStore(settings.tasks_path, lock_timeout_seconds=settings.lock_timeout_seconds),
        context=ContextLog(
            settings.context_path,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        ),
        history=HistoryRecorder(
            settings.history_path,
            window=settings.loop.history_window,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        ),
        loop_state=LoopStateStore(
            settings.loop_state_path,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        ),
    )


def _resolve_prompt(command: RunLoopCommand) -> str:
    if command.prompt_file is not None:
        text = read_text_or_none(command.prompt_file)
        if text is None:
            raise PromptError(f"Prompt file not found: {command.prompt_file}")
        if command.prompt.strip():
            logger.warning("Both prompt and --prompt-file given; using %s", command.prompt_file)
    else:
        text = command.prompt
    if not text.strip():
        raise PromptError("No prompt provided")
    return text.strip()


def _loop_options(*, command: RunLoopCommand, settings: Settings, prompt: str) -> LoopOptions:
    loop = settings.loop
    max_iterations = _pick(command.max_iterations, loop.max_iterations)
    min_iterations = _pick(command.min_iterations, loop.min_iterations)
    if max_iterations < 0:
        raise ValidationError("--max-iterations must be >= 0")
    if min_iterations < 1:
        raise ValidationError("--min-iterations must be >= 1")
    if 0 < max_iterations < min_iterations:
        raise ValidationError("--min-iterations exceeds --max-iterations")

    completion_promise = (command.completion_promise or loop.completion_promise).strip()
    task_promise = (command.task_promise or loop.task_promise).strip()
    if not completion_promise or not task_promise:
        raise ValidationError("Promise text must not be empty")

    timeout_seconds = _pick(command.timeout_seconds, loop.iteration_timeout_seconds)
    if timeout_seconds < 0:
        raise ValidationError("--timeout must be >= 0")

    agent = resolve_agent(
        settings.agent,
        agent_override=command.agent,
        model_override=command.model,
    )
    # Fail before the loop claims the state directory.
    build_run_args(
        command_template=agent.command_template,
        prompt=prompt,
        prompt_file=str(settings.prompt_path),
        model=agent.model,
    )

    return LoopOptions(
        prompt=prompt,
        agent=agent,
        max_iterations=max_iterations,
        min_iterations=min_iterations,
        completion_promise=completion_promise,
        task_promise=task_promise,
        tasks_mode=command.tasks_mode,
        timeout_seconds=timeout_seconds,
        stream_output=_pick(command.stream_output, loop.stream_output),
        graceful_shutdown_seconds=loop.graceful_shutdown_seconds,
    )


def _pick(override, default):
    return default if override is None else override


def _render_tasks(tasks: list[Task]) -> list[str]:
    if not tasks:
        return ["No tasks found"]
    return [
        f"{'  ' * task.depth}{task.index}. [{task.status.marker}] {task.description}"
        for task in tasks
    ]


def _preview(text: str) -> str:
    first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
    if len(first_line) > _PROMPT_PREVIEW_CHARS:
        return first_line[: _PROMPT_PREVIEW_CHARS - 3] + "..."
    return first_line
