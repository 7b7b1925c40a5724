"""Startup checks run before the loop is entered."""

from __future__ import annotations

import shutil
from pathlib import Path

from story_loop.config import Settings
from story_loop.loop.backend.cli_backend import BackendRunError, build_argv
from story_loop.loop.contracts import LEDGER_FILE, PROMPT_FILE


class PreflightError(RuntimeError):
    """Fatal configuration or environment problem detected at startup."""


def check_project(settings: Settings, project_name: str) -> Path:
    """Validate settings, project files and agent executable; return project dir."""

    try:
        settings.validate_for_run()
    except ValueError as error:
        raise PreflightError(str(error)) from error

    project_dir = settings.project_dir(project_name)
    if not project_dir.is_dir():
        raise PreflightError(f"Project '{project_name}' does not exist: {project_dir}")
    for required in (LEDGER_FILE, PROMPT_FILE):
        if not (project_dir / required).is_file():
            raise PreflightError(f"Missing {required} in {project_dir}")
    if not settings.agent.workdir.is_dir():
        raise PreflightError(f"Agent workdir does not exist: {settings.agent.workdir}")

    try:
        executable = build_argv(settings.agent.command)[0]
    except BackendRunError as error:
        raise PreflightError(str(error)) from error
    if shutil.which(executable) is None:
        raise PreflightError(f"Agent executable not found in PATH: {executable}")
    return project_dir
