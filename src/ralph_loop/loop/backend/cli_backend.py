"""Subprocess-based backend runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from typing import IO, TextIO

from ralph_loop.loop.backend.base import AgentRunRequest, AgentRunResult
from ralph_loop.state.files import RalphError, write_text_atomic

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
ABORT_EXIT_CODE = 130


class AgentInvocationError(RalphError):
    """Agent process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Run the configured agent command and capture its combined output."""

    def __init__(self, *, output_stream: TextIO | None = None) -> None:
        self.output_stream = output_stream

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        if request.prompt_file is not None:
            write_text_atomic(request.prompt_file, request.prompt)
        run_args = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=str(request.prompt_file or ""),
            model=request.model,
        )

        env = os.environ.copy()
        env["RALPH_LOOP_AGENT"] = request.agent
        env["RALPH_LOOP_MODEL"] = request.model

        start_monotonic = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise AgentInvocationError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentInvocationError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error

        logger.info("Started agent %s (pid %d)", run_args[0], process.pid)
        sink = (self.output_stream or sys.stdout) if request.stream_output else None
        collector = _OutputCollector(process.stdout, sink=sink)
        collector.start()
        exit_code, timed_out, aborted = _wait_with_shutdown(
            process,
            timeout_seconds=request.timeout_seconds,
            shutdown_requested=request.shutdown_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
        )
        collector.join(timeout=5)
        elapsed_ms = int((time.monotonic() - start_monotonic) * 1000)
        return AgentRunResult(
            exit_code=exit_code,
            elapsed_ms=elapsed_ms,
            output=collector.text(),
            timed_out=timed_out,
            aborted=aborted,
        )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: str,
    model: str,
) -> list[str]:
    """Split the template into argv, then fill placeholders token by token.

    Each placeholder lands inside exactly one argv element, so prompt text never
    needs shell quoting.
    """

    stripped = command_template.strip()
    if not stripped:
        raise AgentInvocationError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentInvocationError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    if "{model}" in stripped and not model:
        raise AgentInvocationError(
            "Agent command template uses {model} but no model is set.",
            transient=False,
        )

    values = {"prompt": prompt, "prompt_file": prompt_file, "model": model}
    try:
        argv = [token.format_map(values) for token in shlex.split(stripped)]
    except (KeyError, IndexError, ValueError) as error:
        raise AgentInvocationError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    if not argv:
        raise AgentInvocationError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv


class _OutputCollector(threading.Thread):
    """Drain the child's output, optionally echoing each line as it arrives."""

    def __init__(self, stream: IO[str] | None, *, sink: TextIO | None) -> None:
        super().__init__(daemon=True, name="ralph-agent-output")
        self._stream = stream
        self._sink = sink
        self._chunks: list[str] = []

    def run(self) -> None:
        if self._stream is None:
            return
        with self._stream:
            for line in self._stream:
                self._chunks.append(line)
                if self._sink is not None:
                    self._sink.write(line)
                    self._sink.flush()

    def text(self) -> str:
        return "".join(self._chunks)


def _wait_with_shutdown(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: int,
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int,
) -> tuple[int, bool, bool]:
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, shutdown_deadline is not None

        now = time.monotonic()
        if timeout_seconds > 0 and now - start_monotonic >= timeout_seconds:
            logger.warning("Agent exceeded %ds timeout; terminating", timeout_seconds)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return ABORT_EXIT_CODE, False, True

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
