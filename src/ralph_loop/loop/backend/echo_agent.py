"""Local deterministic agent for loop integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from ralph_loop.state.models import TaskStatus
from ralph_loop.state.tasks import TaskStore


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt head, print canned replies, optionally tick off a task."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--reply", action="append", default=[])
    parser.add_argument("--mark-done", default=None, help="Tasks file to tick off one task in.")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    text = Path(args.prompt_file).read_text("utf-8") if args.prompt_file else args.prompt
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    print(f"echo-agent: {first_line}", flush=True)

    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.mark_done:
        _tick_one_task(TaskStore(Path(args.mark_done)))
    for reply in args.reply:
        print(reply, flush=True)
    return args.exit_code


def _tick_one_task(store: TaskStore) -> None:
    tasks = store.list_tasks()
    for wanted in (TaskStatus.IN_PROGRESS, TaskStatus.TODO):
        for task in tasks:
            if task.status == wanted:
                store.mark_done(task.index)
                return


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
