"""Shared file helpers for the per-project state directory."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

TASKS_FILE_NAME = "ralph-tasks.md"
CONTEXT_FILE_NAME = "ralph-context.md"
HISTORY_FILE_NAME = "ralph-history.json"
LOOP_STATE_FILE_NAME = "ralph-loop.state.json"
PROMPT_FILE_NAME = "ralph-prompt.md"


class RalphError(RuntimeError):
    """Base class for expected, operator-facing failures."""


class ValidationError(RalphError):
    """Invalid operator input; nothing was mutated."""


class StateFileError(RalphError):
    """State directory or file could not be created, read, written or locked."""


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def ensure_state_dir(state_dir: Path) -> Path:
    """Create the state directory lazily, translating OS failures."""

    try:
        state_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise StateFileError(f"Cannot create state directory {state_dir}: {error}") from error
    return state_dir


def read_text_or_none(path: Path, *, errors: str = "strict") -> str | None:
    """Read a UTF-8 state file; absence is not an error.

    With ``errors="replace"`` undecodable bytes become U+FFFD instead of raising.
    """

    try:
        return path.read_text(encoding="utf-8", errors=errors)
    except FileNotFoundError:
        return None
    except UnicodeDecodeError as error:
        raise StateFileError(f"Cannot read {path}: not valid UTF-8 ({error})") from error
    except OSError as error:
        raise StateFileError(f"Cannot read {path}: {error}") from error


def write_text_atomic(path: Path, text: str) -> None:
    """Replace file content in one rename so readers never see a partial write."""

    ensure_state_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as error:
        Path(tmp_name).unlink(missing_ok=True)
        raise StateFileError(f"Cannot write {path}: {error}") from error


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def load_json_object(path: Path) -> dict[str, Any] | None:
    """Load a JSON object; returns None when the file is absent.

    Undecodable or malformed content raises ``ValueError``; a non-object raises
    ``TypeError``.
    """

    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as error:
        raise StateFileError(f"Cannot read {path}: {error}") from error
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


@contextmanager
def locked(path: Path, *, timeout_seconds: float) -> Iterator[None]:
    """Hold an exclusive cross-process lock guarding ``path``.

    The lock lives in a sibling ``<name>.lock`` file so the guarded file itself
    can be replaced atomically while the lock is held.
    """

    ensure_state_dir(path.parent)
    lock = FileLock(str(path.with_name(f"{path.name}.lock")), timeout=timeout_seconds)
    try:
        with lock:
            yield
    except Timeout as error:
        raise StateFileError(
            f"Timed out after {timeout_seconds:g}s waiting for lock on {path.name}",
        ) from error


def move_aside(path: Path, *, label: str = "corrupt") -> Path:
    """Rename ``path`` to a timestamped sibling so a rewrite never loses its content."""

    target = path.with_name(f"{path.name}.{label}-{utc_now():%Y%m%dT%H%M%S%fZ}")
    try:
        os.replace(path, target)
    except OSError as error:
        raise StateFileError(f"Cannot move {path} aside: {error}") from error
    return target
