"""Runtime configuration for the loop controller and its state directory."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop.state.files import (
    CONTEXT_FILE_NAME,
    HISTORY_FILE_NAME,
    LOOP_STATE_FILE_NAME,
    PROMPT_FILE_NAME,
    TASKS_FILE_NAME,
)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class AgentSettings:
    """External agent selection and command templates."""

    default_agent: str = "opencode"
    model: str = ""
    opencode_command_template: str = "opencode run {prompt}"
    opencode_model_command_template: str = "opencode run --model {model} {prompt}"
    claude_command_template: str = "claude -p {prompt}"
    claude_model_command_template: str = "claude -p --model {model} {prompt}"


@dataclass(slots=True)
class LoopSettings:
    """Loop defaults; CLI flags override them per invocation."""

    max_iterations: int = 0
    min_iterations: int = 1
    completion_promise: str = "COMPLETE"
    task_promise: str = "READY_FOR_NEXT_TASK"
    iteration_timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 10
    stream_output: bool = True
    history_window: int = 20


@dataclass(slots=True)
class StruggleSettings:
    """Thresholds for the struggle heuristics."""

    no_progress_iterations: int = 3
    repeated_output_window: int = 2
    repeated_error_iterations: int = 3
    short_iteration_seconds: float = 30.0
    short_iterations: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: Path = Path(".opencode")
    lock_timeout_seconds: float = 10.0
    log_level: str = "WARNING"
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    struggle: StruggleSettings = field(default_factory=StruggleSettings)

    @property
    def tasks_path(self) -> Path:
        return self.state_dir / TASKS_FILE_NAME

    @property
    def context_path(self) -> Path:
        return self.state_dir / CONTEXT_FILE_NAME

    @property
    def history_path(self) -> Path:
        return self.state_dir / HISTORY_FILE_NAME

    @property
    def loop_state_path(self) -> Path:
        return self.state_dir / LOOP_STATE_FILE_NAME

    @property
    def prompt_path(self) -> Path:
        return self.state_dir / PROMPT_FILE_NAME

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        defaults = AgentSettings()
        return cls(
            state_dir=state_dir or Path(os.getenv("RALPH_STATE_DIR", ".opencode")),
            lock_timeout_seconds=float(os.getenv("RALPH_LOCK_TIMEOUT_SECONDS", "10")),
            log_level=os.getenv("RALPH_LOG_LEVEL", "WARNING").strip().upper(),
            agent=AgentSettings(
                default_agent=os.getenv("RALPH_AGENT", "opencode").strip().lower(),
                model=os.getenv("RALPH_MODEL", "").strip(),
                opencode_command_template=os.getenv(
                    "RALPH_OPENCODE_COMMAND",
                    defaults.opencode_command_template,
                ),
                opencode_model_command_template=os.getenv(
                    "RALPH_OPENCODE_MODEL_COMMAND",
                    defaults.opencode_model_command_template,
                ),
                claude_command_template=os.getenv(
                    "RALPH_CLAUDE_COMMAND",
                    defaults.claude_command_template,
                ),
                claude_model_command_template=os.getenv(
                    "RALPH_CLAUDE_MODEL_COMMAND",
                    defaults.claude_model_command_template,
                ),
            ),
            loop=LoopSettings(
                max_iterations=int(os.getenv("RALPH_MAX_ITERATIONS", "0")),
                min_iterations=int(os.getenv("RALPH_MIN_ITERATIONS", "1")),
                completion_promise=os.getenv("RALPH_COMPLETION_PROMISE", "COMPLETE").strip(),
                task_promise=os.getenv("RALPH_TASK_PROMISE", "READY_FOR_NEXT_TASK").strip(),
                iteration_timeout_seconds=int(
                    os.getenv("RALPH_ITERATION_TIMEOUT_SECONDS", "1800"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("RALPH_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                stream_output=_env_bool("RALPH_STREAM_OUTPUT", default=True),
                history_window=int(os.getenv("RALPH_HISTORY_WINDOW", "20")),
            ),
            struggle=StruggleSettings(
                no_progress_iterations=int(
                    os.getenv("RALPH_STRUGGLE_NO_PROGRESS_ITERATIONS", "3"),
                ),
                repeated_output_window=int(
                    os.getenv("RALPH_STRUGGLE_REPEATED_OUTPUT_WINDOW", "2"),
                ),
                repeated_error_iterations=int(
                    os.getenv("RALPH_STRUGGLE_REPEATED_ERROR_ITERATIONS", "3"),
                ),
                short_iteration_seconds=float(
                    os.getenv("RALPH_STRUGGLE_SHORT_ITERATION_SECONDS", "30"),
                ),
                short_iterations=int(os.getenv("RALPH_STRUGGLE_SHORT_ITERATIONS", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.lock_timeout_seconds <= 0:
            raise ValueError("RALPH_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"RALPH_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}: {self.log_level!r}",
            )
        if self.loop.max_iterations < 0:
            raise ValueError("RALPH_MAX_ITERATIONS must be >= 0.")
        if self.loop.min_iterations < 1:
            raise ValueError("RALPH_MIN_ITERATIONS must be >= 1.")
        if not self.loop.completion_promise:
            raise ValueError("RALPH_COMPLETION_PROMISE must not be empty.")
        if not self.loop.task_promise:
            raise ValueError("RALPH_TASK_PROMISE must not be empty.")
        if self.loop.iteration_timeout_seconds < 0:
            raise ValueError("RALPH_ITERATION_TIMEOUT_SECONDS must be >= 0.")
        if self.loop.graceful_shutdown_seconds < 0:
            raise ValueError("RALPH_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.loop.history_window < 1:
            raise ValueError("RALPH_HISTORY_WINDOW must be >= 1.")
        thresholds = {
            "RALPH_STRUGGLE_NO_PROGRESS_ITERATIONS": self.struggle.no_progress_iterations,
            "RALPH_STRUGGLE_REPEATED_OUTPUT_WINDOW": self.struggle.repeated_output_window,
            "RALPH_STRUGGLE_REPEATED_ERROR_ITERATIONS": self.struggle.repeated_error_iterations,
            "RALPH_STRUGGLE_SHORT_ITERATIONS": self.struggle.short_iterations,
        }
        for name, value in thresholds.items():
            if value < 1:
                raise ValueError(f"{name} must be >= 1.")
        if self.struggle.short_iteration_seconds < 0:
            raise ValueError("RALPH_STRUGGLE_SHORT_ITERATION_SECONDS must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
