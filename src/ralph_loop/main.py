"""CLI entrypoint for ralph."""

import logging
import os
from pathlib import Path

import rich_click as click

from ralph_loop import __version__
from ralph_loop.loop.controller import LoopStatus
from ralph_loop.loop.controllers import (
    AddContextCommand,
    AddTaskCommand,
    ClearContextCommand,
    ListTasksCommand,
    RalphCliController,
    RemoveTaskCommand,
    RunLoopCommand,
    StatusCommand,
)
from ralph_loop.state import RalphError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RalphCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="ralph", message="%(prog)s %(version)s")
@click.argument("prompt", nargs=-1)
@click.option("--status", "show_status", is_flag=True, help="Show active loop and history.")
@click.option(
    "--tasks",
    "tasks_flag",
    is_flag=True,
    help="With `--status`: include the task list. With a prompt: run in tasks mode.",
)
@click.option("--add-context", default=None, help="Append a note for the next iteration.")
@click.option("--clear-context", is_flag=True, help="Delete the context log.")
@click.option("--add-task", default=None, help="Append a task to the task list.")
@click.option("--list-tasks", is_flag=True, help="List tasks with their indexes.")
@click.option(
    "--remove-task",
    default=None,
    metavar="INDEX",
    help="Remove a task (1-based) together with its subtasks.",
)
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Read the prompt from a file instead of the argument.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after this many iterations; 0 means unlimited. Default: RALPH_MAX_ITERATIONS.",
)
@click.option(
    "--min-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Ignore the completion promise before this iteration.",
)
@click.option(
    "--completion-promise",
    default=None,
    help="Text the agent wraps in `<promise>` tags when done. Default: COMPLETE.",
)
@click.option(
    "--task-promise",
    default=None,
    help="Tasks mode: text signalling the current task is done. Default: READY_FOR_NEXT_TASK.",
)
@click.option("--agent", default=None, help="Agent to run: opencode or claude-code.")
@click.option("--model", default=None, help="Model passed to the agent.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Per-iteration agent timeout in seconds; 0 disables it.",
)
@click.option(
    "--stream/--no-stream",
    "stream_output",
    default=None,
    help="Echo agent output while it runs. Default: RALPH_STREAM_OUTPUT.",
)
@click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="State directory. Default: RALPH_STATE_DIR or .opencode.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log loop lifecycle at INFO level.")
@click.pass_context
def ralph(  # noqa: PLR0913
    ctx: click.Context,
    prompt: tuple[str, ...],
    show_status: bool,
    tasks_flag: bool,
    add_context: str | None,
    clear_context: bool,
    add_task: str | None,
    list_tasks: bool,
    remove_task: str | None,
    prompt_file: Path | None,
    max_iterations: int | None,
    min_iterations: int | None,
    completion_promise: str | None,
    task_promise: str | None,
    agent: str | None,
    model: str | None,
    timeout_seconds: int | None,
    stream_output: bool | None,
    state_dir: Path | None,
    verbose: bool,
) -> None:
    """Ralph Wiggum Loop: feed the same prompt to a coding agent until the work is done.

    Each iteration sends the prompt, the context log and the task list to the
    agent. The loop stops when the agent prints `<promise>COMPLETE</promise>`,
    when every task is done, or when `--max-iterations` is reached.
    """

    _configure_logging(verbose=verbose)
    try:
        if show_status:
            _emit_lines(
                CONTROLLER.status(StatusCommand(state_dir=state_dir, include_tasks=tasks_flag)),
            )
            return
        if add_context is not None:
            _emit_lines(
                CONTROLLER.add_context(AddContextCommand(text=add_context, state_dir=state_dir)),
            )
            return
        if clear_context:
            _emit_lines(CONTROLLER.clear_context(ClearContextCommand(state_dir=state_dir)))
            return
        if add_task is not None:
            _emit_lines(
                CONTROLLER.add_task(AddTaskCommand(description=add_task, state_dir=state_dir)),
            )
            return
        if list_tasks:
            _emit_lines(CONTROLLER.list_tasks(ListTasksCommand(state_dir=state_dir)))
            return
        if remove_task is not None:
            _emit_lines(
                CONTROLLER.remove_task(
                    RemoveTaskCommand(index=_parse_index(remove_task), state_dir=state_dir),
                ),
            )
            return

        result = CONTROLLER.run_loop(
            RunLoopCommand(
                prompt=" ".join(prompt),
                prompt_file=prompt_file,
                max_iterations=max_iterations,
                min_iterations=min_iterations,
                completion_promise=completion_promise,
                task_promise=task_promise,
                tasks_mode=tasks_flag,
                agent=agent,
                model=model,
                timeout_seconds=timeout_seconds,
                stream_output=stream_output,
                state_dir=state_dir,
            ),
            on_progress=_emit_progress,
        )
    except RalphError as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(result.lines)
    if result.status == LoopStatus.FAILED:
        raise click.ClickException(f"Loop failed: {result.stop_reason}")
    if result.exit_code:
        ctx.exit(result.exit_code)


def _parse_index(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as error:
        raise click.ClickException(f"Invalid task index: {value!r}") from error


def _configure_logging(*, verbose: bool) -> None:
    level_name = os.getenv("RALPH_LOG_LEVEL", "WARNING").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    if verbose:
        level = min(level, logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)


def _emit_progress(line: str) -> None:
    click.echo(f"[ralph] {line}")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph()
