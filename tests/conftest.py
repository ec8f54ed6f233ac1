"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND = f"{shlex.quote(sys.executable)} -m ralph_loop.loop.backend.echo_agent"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop RALPH_* variables leaking in from the developer shell."""
    for name in list(os.environ):
        if name.startswith("RALPH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def state_dir(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / ".opencode"
    monkeypatch.setenv("RALPH_STATE_DIR", str(path))
    return path


@pytest.fixture()
def echo_agent(monkeypatch):
    """Return a helper that points the opencode template at the echo agent."""

    pythonpath = os.pathsep.join(filter(None, [str(_SRC_DIR), os.getenv("PYTHONPATH")]))
    monkeypatch.setenv("PYTHONPATH", pythonpath)

    def _configure(*extra_args: str) -> str:
        template = " ".join(
            [ECHO_AGENT_COMMAND, "--prompt-file {prompt_file}", *map(shlex.quote, extra_args)],
        )
        monkeypatch.setenv("RALPH_AGENT", "opencode")
        monkeypatch.setenv("RALPH_OPENCODE_COMMAND", template)
        return template

    return _configure
