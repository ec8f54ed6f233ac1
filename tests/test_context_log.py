from __future__ import annotations

import re
from pathlib import Path

import allure

from ralph_loop.state import ContextLog
from ralph_loop.state.context import CONTEXT_LOG_TITLE

pytestmark = [
    allure.epic("Ralph Loop"),
    allure.feature("Context Log"),
]


def _log(tmp_path: Path) -> ContextLog:
    return ContextLog(tmp_path / ".opencode" / "ralph-context.md", lock_timeout_seconds=5)


def test_append_creates_state_dir_with_title_and_timestamp(tmp_path: Path) -> None:
    log = _log(tmp_path)

    log.append("Test context for iteration")

    content = log.read()
    assert content is not None
    assert content.startswith(f"{CONTEXT_LOG_TITLE}\n")
    assert "Ralph Loop Context" in content
    assert "Test context for iteration" in content
    assert re.search(r"^## \d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} UTC$", content, flags=re.MULTILINE)


def test_entries_are_appended_in_order(tmp_path: Path) -> None:
    log = _log(tmp_path)

    log.append("first note")
    log.append("second note")

    content = log.read() or ""
    assert content.count(CONTEXT_LOG_TITLE) == 1
    assert content.index("first note") < content.index("second note")


def test_blank_entry_is_ignored(tmp_path: Path) -> None:
    log = _log(tmp_path)

    log.append("  \n")

    assert log.read() is None


def test_clear_then_read_is_absent(tmp_path: Path) -> None:
    log = _log(tmp_path)
    log.append("Some context")

    assert log.clear() is True
    assert log.read() is None
    assert not log.path.exists()


def test_clear_without_log_is_noop(tmp_path: Path) -> None:
    assert _log(tmp_path).clear() is False


def test_append_to_hand_written_file_keeps_existing_text(tmp_path: Path) -> None:
    log = _log(tmp_path)
    log.path.parent.mkdir(parents=True)
    log.path.write_text("Some context\n", encoding="utf-8")

    log.append("added later")

    content = log.read() or ""
    assert content.startswith("Some context\n")
    assert "added later" in content
