"""CLI entrypoint for story-loop."""

from pathlib import Path

import rich_click as click

from story_loop import __version__
from story_loop.loop.controllers import (
    CommandResult,
    LoopCliController,
    ResetCommand,
    RunCommand,
    StatusCommand,
)

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

_PROJECTS_ROOT_OPTION = click.option(
    "--projects-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding project folders. Defaults to STORY_LOOP_PROJECTS_ROOT or ./projects.",
)


@click.group()
@click.version_option(version=__version__, prog_name="story-loop")
def story_loop() -> None:
    """Unattended agent loop over a `prd.json` story ledger."""


@story_loop.command("run")
@click.argument("project")
@click.option(
    "-n",
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after this many iterations (0 = unlimited).",
)
@click.option(
    "-c",
    "--calls",
    "max_calls_per_hour",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum agent calls per wall-clock hour.",
)
@click.option(
    "-t",
    "--timeout",
    "timeout_minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Per-invocation timeout in minutes.",
)
@click.option(
    "--complete-token",
    default=None,
    help="Exact string the agent prints when every story passes.",
)
@click.option(
    "--agent-command",
    default=None,
    help="Agent command line; the prompt is fed on stdin.",
)
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for the agent process.",
)
@_PROJECTS_ROOT_OPTION
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def run(  # noqa: PLR0913
    project: str,
    max_iterations: int | None,
    max_calls_per_hour: int | None,
    timeout_minutes: int | None,
    complete_token: str | None,
    agent_command: str | None,
    workdir: Path | None,
    projects_root: Path | None,
    verbose: bool,
) -> None:
    """Run the iteration loop for PROJECT until complete, halted or capped."""

    _finish(
        LOOP_CONTROLLER.run(
            RunCommand(
                project=project,
                projects_root=projects_root,
                max_iterations=max_iterations,
                max_calls_per_hour=max_calls_per_hour,
                timeout_minutes=timeout_minutes,
                complete_token=complete_token,
                agent_command=agent_command,
                workdir=workdir,
                verbose=verbose,
            ),
        ),
        failure="Story loop stopped with errors.",
    )


@story_loop.command("status")
@click.argument("project")
@_PROJECTS_ROOT_OPTION
def status(project: str, projects_root: Path | None) -> None:
    """Show the last published status, pending stories and breaker state."""

    _finish(
        LOOP_CONTROLLER.status(StatusCommand(project=project, projects_root=projects_root)),
        failure="Status unavailable.",
    )


@story_loop.command("reset")
@click.argument("project")
@click.option(
    "--reason",
    default="manual reset",
    show_default=True,
    help="Reason recorded in the breaker state.",
)
@_PROJECTS_ROOT_OPTION
def reset(project: str, reason: str, projects_root: Path | None) -> None:
    """Force the circuit breaker of PROJECT back to CLOSED."""

    _finish(
        LOOP_CONTROLLER.reset(
            ResetCommand(project=project, reason=reason, projects_root=projects_root),
        ),
        failure="Reset failed.",
    )


def _finish(result: CommandResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    story_loop()
