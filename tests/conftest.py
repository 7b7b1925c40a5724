"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from story_loop.loop.backend.base import TIMEOUT_EXIT_CODE, AgentRunRequest, AgentRunResult

ECHO_AGENT_COMMAND = f"{sys.executable} -m story_loop.loop.backend.echo_agent"


@dataclass(slots=True)
class RecordingWaiter:
    """Waiter that returns immediately and remembers every requested wait."""

    waits: list[tuple[float, str]] = field(default_factory=list)
    interrupt_on: str | None = None
    on_wait: Callable[[float, str], None] | None = None

    def wait(self, seconds: float, *, label: str) -> bool:
        self.waits.append((seconds, label))
        if self.on_wait is not None:
            self.on_wait(seconds, label)
        return label != self.interrupt_on


@dataclass(slots=True)
class ScriptedRun:
    """One scripted backend attempt."""

    exit_code: int = 0
    output: str = ""
    timed_out: bool = False
    interrupted: bool = False

    @classmethod
    def timeout(cls, output: str = "") -> ScriptedRun:
        return cls(exit_code=TIMEOUT_EXIT_CODE, output=output, timed_out=True)


@dataclass(slots=True)
class ScriptedBackend:
    """Backend that replays scripted attempts; the last one repeats."""

    runs: list[ScriptedRun]
    requests: list[AgentRunRequest] = field(default_factory=list)
    before_run: Callable[[AgentRunRequest], None] | None = None

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        index = min(len(self.requests), len(self.runs) - 1)
        self.requests.append(request)
        if self.before_run is not None:
            self.before_run(request)
        scripted = self.runs[index]
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        request.output_path.write_text(scripted.output, "utf-8")
        return AgentRunResult(
            exit_code=scripted.exit_code,
            timed_out=scripted.timed_out,
            output_path=request.output_path,
            interrupted=scripted.interrupted,
        )


def write_ledger(path: Path, stories: list[dict], *, branch_name: str | None = None) -> None:
    payload: object = stories
    if branch_name is not None:
        payload = {"branchName": branch_name, "userStories": stories}
    path.write_text(json.dumps(payload, indent=2), "utf-8")


def stories(total: int, *, complete: int = 0) -> list[dict]:
    return [
        {
            "id": f"US-{index + 1:03d}",
            "category": "core",
            "story": f"Story number {index + 1}",
            "steps": ["do it"],
            "acceptance": ["it is done"],
            "priority": index + 1,
            "passes": index < complete,
            "notes": "",
        }
        for index in range(total)
    ]


@pytest.fixture()
def waiter() -> RecordingWaiter:
    return RecordingWaiter()


@pytest.fixture()
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Create ``projects/<name>`` with a ledger and prompt template."""

    def _make(
        name: str = "demo",
        *,
        total: int = 3,
        complete: int = 0,
        branch_name: str | None = None,
    ) -> Path:
        project_dir = tmp_path / "projects" / name
        project_dir.mkdir(parents=True, exist_ok=True)
        write_ledger(
            project_dir / "prd.json",
            stories(total, complete=complete),
            branch_name=branch_name,
        )
        (project_dir / "PROMPT.md").write_text("# Agent instructions\n\nWork carefully.\n", "utf-8")
        return project_dir

    return _make
