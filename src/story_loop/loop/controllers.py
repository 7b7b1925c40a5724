"""Controllers for story-loop CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from story_loop.config import Settings
from story_loop.logging_setup import configure_logging
from story_loop.loop.circuit_breaker import CircuitBreaker
from story_loop.loop.contracts import LEDGER_FILE, LOGS_DIR, STATUS_FILE, read_status_snapshot
from story_loop.loop.controller import build_iteration_controller
from story_loop.loop.ledger import TaskLedger
from story_loop.loop.models import LoopResult, LoopStatus
from story_loop.loop.preflight import PreflightError, check_project
from story_loop.loop.status import render_status_lines

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for the iteration loop."""

    project: str
    projects_root: Path | None = None
    max_iterations: int | None = None
    max_calls_per_hour: int | None = None
    timeout_minutes: int | None = None
    complete_token: str | None = None
    agent_command: str | None = None
    workdir: Path | None = None
    verbose: bool = False


@dataclass(slots=True)
class StatusCommand:
    """CLI input for the status report."""

    project: str
    projects_root: Path | None = None


@dataclass(slots=True)
class ResetCommand:
    """CLI input for a manual breaker reset."""

    project: str
    reason: str = "manual reset"
    projects_root: Path | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command succeeded."""

    lines: list[str]
    success: bool


class LoopCliController:
    """Coordinates run, status and reset CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        try:
            settings = _apply_overrides(Settings.from_env(command.projects_root), command)
            project_dir = check_project(settings, command.project)
        except (PreflightError, ValueError) as error:
            return CommandResult(lines=[f"Preflight failed: {error}"], success=False)

        log_path = configure_logging(log_dir=project_dir / LOGS_DIR, verbose=command.verbose)
        logger.info("Project: %s (log: %s)", command.project, log_path)
        result = build_iteration_controller(settings=settings, project_dir=project_dir).run()
        return CommandResult(
            lines=_result_lines(command.project, result),
            success=result.status is not LoopStatus.HALTED,
        )

    def status(self, command: StatusCommand) -> CommandResult:
        settings = Settings.from_env(command.projects_root)
        project_dir = settings.project_dir(command.project)
        if not project_dir.is_dir():
            return CommandResult(
                lines=[f"Project '{command.project}' does not exist: {project_dir}"],
                success=False,
            )
        snapshot = read_status_snapshot(project_dir / STATUS_FILE)
        if snapshot is None:
            return CommandResult(
                lines=[f"No status file found in {project_dir}"],
                success=False,
            )
        breaker = CircuitBreaker(state_dir=project_dir, settings=settings.breaker)
        return CommandResult(
            lines=render_status_lines(
                project_name=command.project,
                snapshot=snapshot,
                ledger=TaskLedger(project_dir / LEDGER_FILE).load(),
                breaker_lines=breaker.describe(),
            ),
            success=True,
        )

    def reset(self, command: ResetCommand) -> CommandResult:
        settings = Settings.from_env(command.projects_root)
        project_dir = settings.project_dir(command.project)
        if not project_dir.is_dir():
            return CommandResult(
                lines=[f"Project '{command.project}' does not exist: {project_dir}"],
                success=False,
            )
        breaker = CircuitBreaker(state_dir=project_dir, settings=settings.breaker)
        previous = breaker.state()
        breaker.reset(command.reason)
        return CommandResult(
            lines=[
                f"Circuit breaker reset: {previous.value} -> CLOSED",
                f"Reason: {command.reason}",
            ],
            success=True,
        )


def _apply_overrides(settings: Settings, command: RunCommand) -> Settings:
    loop = settings.loop
    if command.max_iterations is not None:
        loop = replace(loop, max_iterations=command.max_iterations)
    if command.max_calls_per_hour is not None:
        loop = replace(loop, max_calls_per_hour=command.max_calls_per_hour)
    if command.timeout_minutes is not None:
        loop = replace(loop, timeout_minutes=command.timeout_minutes)
    if command.complete_token is not None:
        loop = replace(loop, complete_token=command.complete_token)

    agent = settings.agent
    if command.agent_command is not None:
        agent = replace(agent, command=command.agent_command)
    if command.workdir is not None:
        agent = replace(agent, workdir=command.workdir)
    return replace(settings, loop=loop, agent=agent)


def _result_lines(project: str, result: LoopResult) -> list[str]:
    lines = [
        "Loop summary: "
        f"project={project} status={result.status.value} "
        f"iterations={result.iterations} invocations={result.invocations} "
        f"last_outcome={result.last_outcome.value if result.last_outcome else '-'}",
    ]
    if result.status is LoopStatus.HALTED:
        lines.append(f"Circuit breaker is OPEN. Resume with: story-loop reset {project}")
    return lines
