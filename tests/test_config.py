from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ralph_loop.config import AgentSettings, LoopSettings, Settings, StruggleSettings
from ralph_loop.loop.agents import resolve_agent
from ralph_loop.state import ValidationError

pytestmark = [
    allure.epic("Ralph Loop"),
    allure.feature("Configuration"),
]


def test_defaults_point_at_opencode_state_dir() -> None:
    settings = Settings.from_env()

    assert settings.state_dir == Path(".opencode")
    assert settings.tasks_path == Path(".opencode/ralph-tasks.md")
    assert settings.context_path == Path(".opencode/ralph-context.md")
    assert settings.history_path == Path(".opencode/ralph-history.json")
    assert settings.loop.max_iterations == 0
    assert settings.loop.completion_promise == "COMPLETE"
    assert settings.loop.stream_output is True
    settings.validate()


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RALPH_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("RALPH_AGENT", " Claude-Code ")
    monkeypatch.setenv("RALPH_MAX_ITERATIONS", "7")
    monkeypatch.setenv("RALPH_STREAM_OUTPUT", "off")
    monkeypatch.setenv("RALPH_STRUGGLE_SHORT_ITERATION_SECONDS", "2.5")

    settings = Settings.from_env()

    assert settings.state_dir == tmp_path / "state"
    assert settings.agent.default_agent == "claude-code"
    assert settings.loop.max_iterations == 7
    assert settings.loop.stream_output is False
    assert settings.struggle.short_iteration_seconds == 2.5


def test_explicit_state_dir_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RALPH_STATE_DIR", str(tmp_path / "from-env"))

    assert Settings.from_env(state_dir=tmp_path / "cli").state_dir == tmp_path / "cli"


def test_invalid_boolean_env_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_STREAM_OUTPUT", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for RALPH_STREAM_OUTPUT"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(lock_timeout_seconds=0), "RALPH_LOCK_TIMEOUT_SECONDS"),
        (Settings(log_level="LOUD"), "RALPH_LOG_LEVEL"),
        (Settings(loop=LoopSettings(min_iterations=0)), "RALPH_MIN_ITERATIONS"),
        (Settings(loop=LoopSettings(completion_promise="")), "RALPH_COMPLETION_PROMISE"),
        (Settings(loop=LoopSettings(history_window=0)), "RALPH_HISTORY_WINDOW"),
        (
            Settings(struggle=StruggleSettings(repeated_output_window=0)),
            "RALPH_STRUGGLE_REPEATED_OUTPUT_WINDOW",
        ),
    ],
)
def test_validate_names_offending_variable(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_resolve_agent_uses_model_template_only_with_model() -> None:
    settings = AgentSettings()

    plain = resolve_agent(settings)
    with_model = resolve_agent(settings, agent_override="claude", model_override="sonnet")

    assert plain.agent == "opencode"
    assert plain.command_template == settings.opencode_command_template
    assert with_model.agent == "claude-code"
    assert with_model.model == "sonnet"
    assert with_model.command_template == settings.claude_model_command_template


def test_resolve_agent_rejects_unknown_agent() -> None:
    with pytest.raises(ValidationError, match="Unsupported agent='codex'"):
        resolve_agent(AgentSettings(), agent_override="codex")
