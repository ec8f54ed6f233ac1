"""Backend interface for agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run one iteration of the external agent."""

    prompt: str
    agent: str
    model: str
    command_template: str
    timeout_seconds: int = 0
    prompt_file: Path | None = None
    stream_output: bool = True
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int = 0


@dataclass(slots=True)
class AgentRunResult:
    """Observable outcome of one agent run."""

    exit_code: int
    elapsed_ms: int
    output: str
    timed_out: bool = False
    aborted: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent once and return its outcome."""
