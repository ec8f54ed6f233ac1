"""Per-iteration prompt assembly and promise tag detection."""

from __future__ import annotations

import re

from ralph_loop.state.models import Task, TaskStatus
from ralph_loop.state.tasks import serialize_tasks


def promise_tag(promise: str) -> str:
    return f"<promise>{promise}</promise>"


def promise_detected(output: str, promise: str) -> bool:
    """True when the agent printed ``<promise>PROMISE</promise>`` anywhere."""

    pattern = rf"<promise>\s*{re.escape(promise)}\s*</promise>"
    return re.search(pattern, output, flags=re.IGNORECASE) is not None


def build_iteration_prompt(  # noqa: PLR0913
    *,
    base_prompt: str,
    iteration: int,
    max_iterations: int,
    min_iterations: int,
    completion_promise: str,
    context: str | None,
    tasks: list[Task],
    tasks_mode: bool,
    task_promise: str,
) -> str:
    """Combine the operator prompt with the current context log and task snapshot."""

    limit = f" of {max_iterations}" if max_iterations > 0 else ""
    sections = [
        f"# Ralph Wiggum Loop - iteration {iteration}{limit}",
        (
            "You are running inside an iterative loop. The same task is given to you "
            "every iteration; your earlier work is visible in the files you changed. "
            "Pick up where the previous iteration stopped."
        ),
        f"## Task\n\n{base_prompt.strip()}",
    ]

    if context is not None and context.strip():
        sections.append(f"## Loop Context\n\n{context.strip()}")

    if tasks:
        sections.append(f"## Task List\n\n{serialize_tasks(tasks).rstrip()}")
        current = [task for task in tasks if task.status == TaskStatus.IN_PROGRESS]
        if tasks_mode and current:
            names = "; ".join(task.description for task in current)
            sections.append(
                f"Current task: {names}\n\n"
                "Work only on the current task. When it is finished, output "
                f"{promise_tag(task_promise)} on its own line.",
            )

    completion = (
        "When the whole task is complete and verified, output "
        f"{promise_tag(completion_promise)} on its own line. Do not output it otherwise."
    )
    if min_iterations > 1:
        completion += f" Completion is only accepted from iteration {min_iterations} on."
    sections.append(f"## Completion\n\n{completion}")
    return "\n\n".join(sections) + "\n"
