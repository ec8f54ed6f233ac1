"""Agent backend implementations."""

from ralph_loop.loop.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from ralph_loop.loop.backend.cli_backend import AgentInvocationError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentInvocationError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
]
