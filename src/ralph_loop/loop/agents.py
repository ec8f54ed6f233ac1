"""Agent resolution: which executable and command template drive the loop."""

from __future__ import annotations

from dataclasses import dataclass

from ralph_loop.config import AgentSettings
from ralph_loop.state.files import ValidationError

SUPPORTED_AGENTS = ("opencode", "claude-code")
_AGENT_ALIASES = {"claude": "claude-code", "claude_code": "claude-code"}


@dataclass(slots=True)
class ResolvedAgent:
    """Agent, model and command template frozen for one loop run."""

    agent: str
    model: str
    command_template: str


def resolve_agent(
    settings: AgentSettings,
    *,
    agent_override: str | None = None,
    model_override: str | None = None,
) -> ResolvedAgent:
    """Pick the command template for the agent, using the model variant when a model is set."""

    agent = _normalize_agent(
        agent_override if agent_override is not None else settings.default_agent,
    )
    _validate_supported_agent(agent)
    model = (model_override if model_override is not None else settings.model).strip()

    if agent == "opencode":
        plain, with_model = (
            settings.opencode_command_template,
            settings.opencode_model_command_template,
        )
    else:
        plain, with_model = settings.claude_command_template, settings.claude_model_command_template

    command_template = with_model if model else plain
    if not command_template.strip():
        raise ValidationError(f"Empty command template for agent={agent!r}")
    return ResolvedAgent(agent=agent, model=model, command_template=command_template)


def _normalize_agent(value: str) -> str:
    normalized = value.strip().lower()
    return _AGENT_ALIASES.get(normalized, normalized)


def _validate_supported_agent(agent: str) -> None:
    if agent not in SUPPORTED_AGENTS:
        raise ValidationError(
            f"Unsupported agent={agent!r}. Supported: {', '.join(SUPPORTED_AGENTS)}",
        )
