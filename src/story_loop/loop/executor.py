"""Run one bounded agent invocation and classify its outcome."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from story_loop.loop.backend import (
    AgentBackend,
    AgentRunRequest,
    AgentRunResult,
    BackendRunError,
)
from story_loop.loop.backend.base import TIMEOUT_EXIT_CODE
from story_loop.loop.backend.cli_backend import read_output
from story_loop.loop.classifier import (
    ResponseAnalyzer,
    contains_completion_token,
    find_api_limit,
    find_usage_limit,
)
from story_loop.loop.models import InvocationOutcome, OutcomeKind
from story_loop.loop.reset_time import parse_reset_hint
from story_loop.loop.waits import Waiter
from story_loop.loop.workspace import GitChangeProbe

logger = logging.getLogger(__name__)


class InvocationExecutor:
    """Launches the agent with timeout retries and maps the result to an outcome.

    Order of checks for a failed attempt matters: a usage-limit message can be
    printed right before the timeout kill, so it is looked for first.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        command: str,
        logs_dir: Path,
        complete_token: str,
        analyzer: ResponseAnalyzer,
        waiter: Waiter,
        workdir: Path | None = None,
        change_probe: GitChangeProbe | None = None,
        max_timeout_retries: int = 2,
        retry_delay_seconds: float = 10.0,
        graceful_shutdown_seconds: int = 10,
        shutdown_requested: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.backend = backend
        self.command = command
        self.logs_dir = logs_dir
        self.complete_token = complete_token
        self.analyzer = analyzer
        self.waiter = waiter
        self.workdir = workdir
        self.change_probe = change_probe
        self.max_timeout_retries = max_timeout_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.shutdown_requested = shutdown_requested
        self.clock = clock

    def execute(self, prompt: str, timeout_seconds: int) -> InvocationOutcome:
        attempt = 0
        while True:
            attempt += 1
            if attempt > 1:
                logger.info(
                    "Timeout retry %d/%d (timeout: %ds)...",
                    attempt - 1,
                    self.max_timeout_retries,
                    timeout_seconds,
                )
            else:
                logger.info("Starting agent (timeout: %ds)...", timeout_seconds)

            snapshot = self.change_probe.snapshot() if self.change_probe else None
            output_path = self._attempt_log_path(attempt)
            try:
                result = self.backend.run(
                    AgentRunRequest(
                        command=self.command,
                        prompt=prompt,
                        timeout_seconds=timeout_seconds,
                        output_path=output_path,
                        workdir=self.workdir,
                        shutdown_requested=self.shutdown_requested,
                        graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                    ),
                )
            except BackendRunError as error:
                logger.error("Agent execution failed to start: %s", error)
                return InvocationOutcome(
                    kind=OutcomeKind.GENERIC_ERROR,
                    attempts=attempt,
                    log_path=output_path,
                    error_message=str(error),
                )

            output = read_output(result.output_path)
            outcome = self._classify(
                result=result,
                output=output,
                attempt=attempt,
                changed_files=(
                    self.change_probe.changed_files(snapshot) if self.change_probe else None
                ),
            )
            if outcome is not None:
                return outcome

            logger.warning(
                "Agent timed out after %ds (attempt %d/%d); retrying in %ss...",
                timeout_seconds,
                attempt,
                self.max_timeout_retries + 1,
                f"{self.retry_delay_seconds:g}",
            )
            if not self.waiter.wait(self.retry_delay_seconds, label="Retrying in"):
                return InvocationOutcome(
                    kind=OutcomeKind.GENERIC_ERROR,
                    attempts=attempt,
                    exit_code=result.exit_code,
                    log_path=result.output_path,
                    output_size=len(output.encode("utf-8")),
                    error_message="interrupted",
                )

    def _classify(
        self,
        *,
        result: AgentRunResult,
        output: str,
        attempt: int,
        changed_files: int | None,
    ) -> InvocationOutcome | None:
        """Map one attempt to an outcome; ``None`` means retry after a timeout."""

        output_size = len(output.encode("utf-8"))
        base = {
            "attempts": attempt,
            "exit_code": result.exit_code,
            "log_path": result.output_path,
            "output_size": output_size,
        }

        if result.exit_code == 0 and not result.interrupted:
            logger.info("Agent execution completed")
            if contains_completion_token(output, self.complete_token):
                logger.info("Agent signaled PROJECT COMPLETE")
                return InvocationOutcome(kind=OutcomeKind.PROJECT_COMPLETE, **base)
            analysis = self.analyzer.analyze(output, changed_files=changed_files)
            if analysis.exit_signal:
                logger.info("Agent signaled loop completion")
            return InvocationOutcome(kind=OutcomeKind.SUCCESS, analysis=analysis, **base)

        if result.interrupted:
            logger.warning("Agent run interrupted")
            return InvocationOutcome(
                kind=OutcomeKind.GENERIC_ERROR,
                error_message="interrupted",
                **base,
            )

        if find_usage_limit(output) is not None:
            hint = parse_reset_hint(output, now=self.clock())
            logger.warning("Agent is out of usage - detected limit message")
            return InvocationOutcome(
                kind=OutcomeKind.USAGE_LIMIT_REACHED,
                reset_hint=hint,
                **base,
            )

        if result.timed_out or result.exit_code == TIMEOUT_EXIT_CODE:
            if attempt <= self.max_timeout_retries:
                return None
            logger.error(
                "Agent timed out (all %d attempts exhausted)",
                self.max_timeout_retries + 1,
            )
            return InvocationOutcome(
                kind=OutcomeKind.TIMEOUT_EXHAUSTED,
                error_message="timeout",
                **base,
            )

        logger.error("Agent execution failed with code %d", result.exit_code)
        if find_api_limit(output) is not None:
            logger.error("Agent API usage limit reached")
            return InvocationOutcome(
                kind=OutcomeKind.API_LIMIT_REACHED,
                error_message="api limit reached",
                **base,
            )

        return InvocationOutcome(
            kind=OutcomeKind.GENERIC_ERROR,
            error_message=_last_line(output) or f"exit code {result.exit_code}",
            **base,
        )

    def _attempt_log_path(self, attempt: int) -> Path:
        """Per-attempt log name; same-second attempts get a numeric suffix."""

        stem = f"agent_{self.clock().strftime('%Y-%m-%d_%H-%M-%S')}_a{attempt}"
        path = self.logs_dir / f"{stem}.log"
        duplicate = 1
        while path.exists():
            duplicate += 1
            path = self.logs_dir / f"{stem}_{duplicate}.log"
        return path


def _last_line(output: str) -> str:
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.strip()[:200]
    return ""
