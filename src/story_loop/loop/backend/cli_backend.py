"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO

from story_loop.loop.backend.base import (
    INTERRUPTED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    AgentRunRequest,
    AgentRunResult,
)


class BackendRunError(RuntimeError):
    """Agent process could not be started."""


class CliAgentBackend:
    """Feed the prompt on stdin; capture stdout and stderr into one log."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        argv = build_argv(request.command)
        request.output_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as prompt_handle,
                request.output_path.open("w", encoding="utf-8") as output_handle,
            ):
                prompt_handle.write(request.prompt)
                prompt_handle.seek(0)
                return self._run_subprocess_with_shutdown(
                    argv=argv,
                    request=request,
                    stdin_handle=prompt_handle,
                    output_handle=output_handle,
                )
        except FileNotFoundError as error:
            raise BackendRunError(f"Agent command not found: {argv[0]}") from error
        except OSError as error:
            raise BackendRunError(f"Agent command failed to start: {error}") from error

    def _run_subprocess_with_shutdown(
        self,
        *,
        argv: list[str],
        request: AgentRunRequest,
        stdin_handle: IO[str],
        output_handle: IO[str],
    ) -> AgentRunResult:
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=request.workdir,
            stdin=stdin_handle,
            stdout=output_handle,
            stderr=subprocess.STDOUT,
            text=True,
        )
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None
        graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

        while True:
            returncode = process.poll()
            if returncode is not None:
                return AgentRunResult(
                    exit_code=returncode,
                    timed_out=returncode == TIMEOUT_EXIT_CODE,
                    output_path=request.output_path,
                )

            now = time.monotonic()
            if now - start_monotonic >= request.timeout_seconds:
                _terminate_process(process)
                return AgentRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    output_path=request.output_path,
                )

            if request.shutdown_requested is not None and request.shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return AgentRunResult(
                        exit_code=INTERRUPTED_EXIT_CODE,
                        timed_out=False,
                        output_path=request.output_path,
                        interrupted=True,
                    )

            time.sleep(self.poll_interval_seconds)


def build_argv(command: str) -> list[str]:
    stripped = command.strip()
    if not stripped:
        raise BackendRunError("Agent command is empty.")
    try:
        argv = shlex.split(stripped)
    except ValueError as error:
        raise BackendRunError(f"Agent command cannot be parsed: {error}") from error
    return argv


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


def read_output(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
