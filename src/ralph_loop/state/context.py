"""Append-only free-text context log backed by ``ralph-context.md``."""

from __future__ import annotations

import logging
from pathlib import Path

from ralph_loop.state.files import (
    StateFileError,
    ensure_state_dir,
    locked,
    read_text_or_none,
    utc_now,
)

logger = logging.getLogger(__name__)

CONTEXT_LOG_TITLE = "# Ralph Loop Context"


class ContextLog:
    """Timestamped operator and loop notes fed into every iteration prompt."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 10.0) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds

    def read(self) -> str | None:
        return read_text_or_none(self.path, errors="replace")

    def append(self, text: str) -> None:
        body = text.strip()
        if not body:
            return
        stamp = utc_now().strftime("%Y-%m-%d %H:%M:%S UTC")
        entry = f"\n## {stamp}\n\n{body}\n"
        ensure_state_dir(self.path.parent)
        with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
            try:
                with self.path.open("a", encoding="utf-8") as handle:
                    if handle.tell() == 0:
                        handle.write(f"{CONTEXT_LOG_TITLE}\n")
                    handle.write(entry)
            except OSError as error:
                raise StateFileError(f"Cannot append to {self.path}: {error}") from error

    def clear(self) -> bool:
        """Delete the log file; returns False when there was nothing to delete."""

        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise StateFileError(f"Cannot delete {self.path}: {error}") from error
        logger.info("Cleared context log %s", self.path)
        return True
