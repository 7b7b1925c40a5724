"""Backend interface for agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    command: str
    prompt: str
    timeout_seconds: int
    output_path: Path
    workdir: Path | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    output_path: Path
    interrupted: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one agent attempt and return execution metadata."""
