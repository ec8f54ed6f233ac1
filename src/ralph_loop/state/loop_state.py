"""Active loop marker backed by ``ralph-loop.state.json``."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ralph_loop.state.files import (
    StateFileError,
    ValidationError,
    load_json_object,
    locked,
    write_json_atomic,
)
from ralph_loop.state.models import ActiveLoopState

logger = logging.getLogger(__name__)


class LoopStateStore:
    """Tracks the one loop currently driving this state directory."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 10.0) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds

    def read(self) -> ActiveLoopState | None:
        try:
            raw = load_json_object(self.path)
        except (ValueError, TypeError) as error:
            logger.warning("Ignoring unreadable loop state %s: %s", self.path, error)
            return None
        if raw is None:
            return None
        try:
            return ActiveLoopState.from_payload(raw)
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring malformed loop state %s: %s", self.path, error)
            return None

    def claim(self, state: ActiveLoopState) -> None:
        """Record a new active loop, refusing when a live process already owns one."""

        with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
            current = self.read()
            if current is not None and current.pid != state.pid:
                if _pid_alive(current.pid):
                    raise ValidationError(
                        f"A loop is already active (pid {current.pid}); see --status",
                    )
                logger.warning("Replacing stale loop state left by pid %d", current.pid)
            self.write(state)

    def write(self, state: ActiveLoopState) -> None:
        write_json_atomic(self.path, state.to_payload())

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as error:
            raise StateFileError(f"Cannot delete {self.path}: {error}") from error


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill would terminate the process on Windows.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
