from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure

from conftest import RecordingWaiter
from story_loop.loop.contracts import StatusSnapshot, read_status_snapshot
from story_loop.loop.ledger import TaskLedger
from story_loop.loop.models import LoopStatus
from story_loop.loop.prompts import PromptBuilder
from story_loop.loop.rate_limiter import RateLimiter
from story_loop.loop.status import StatusPublisher, render_status_lines

pytestmark = [
    allure.epic("Story Loop"),
    allure.feature("Prompt & Status"),
]

TOKEN = "<promise>COMPLETE</promise>"


def test_prompt_includes_template_progress_and_token(tmp_path: Path, make_project) -> None:
    project_dir = make_project(total=4, complete=1)
    builder = PromptBuilder(project_dir=project_dir, workdir=tmp_path, complete_token=TOKEN)

    prompt = builder.build(TaskLedger(project_dir / "prd.json").load())

    assert prompt.startswith("# Agent instructions")
    assert "| @projects/demo/prd.json | User stories (`passes: false` = incomplete) |" in prompt
    assert "progress.txt" not in prompt
    assert "**Progress: 1/4 complete (3 remaining)**" in prompt
    assert "BRANCH RESTRICTION" not in prompt
    assert TOKEN in prompt
    assert prompt.rstrip().endswith("STOP after completing ONE story.")


def test_prompt_lists_optional_files_and_branch(tmp_path: Path, make_project) -> None:
    project_dir = make_project(total=2, branch_name="feature/login")
    (project_dir / "progress.txt").write_text("US-000 done\n", "utf-8")
    builder = PromptBuilder(project_dir=project_dir, workdir=tmp_path, complete_token=TOKEN)

    prompt = builder.build(TaskLedger(project_dir / "prd.json").load())

    assert "| @projects/demo/progress.txt |" in prompt
    assert "requirements.md" not in prompt
    assert "**Branch:** `feature/login`" in prompt
    assert "You are ONLY allowed to push to branch: `feature/login`" in prompt


def test_publish_writes_full_snapshot(tmp_path: Path, make_project) -> None:
    project_dir = make_project(total=3, complete=1)
    limiter = RateLimiter(
        state_dir=project_dir,
        max_calls_per_hour=50,
        waiter=RecordingWaiter(),
        clock=lambda: datetime(2026, 5, 10, 5, 0),
    )
    limiter.record_call()
    publisher = StatusPublisher(
        state_dir=project_dir,
        ledger=TaskLedger(project_dir / "prd.json"),
        rate_limiter=limiter,
        clock=lambda: datetime(2026, 5, 10, 5, 0, tzinfo=UTC),
    )

    publisher.publish(loop_count=4, status=LoopStatus.RUNNING, current_story="US-002")

    assert json.loads((project_dir / "status.json").read_text("utf-8")) == {
        "timestamp": "2026-05-10T05:00:00+00:00",
        "status": "running",
        "loop_count": 4,
        "current_story": "US-002",
        "stories_complete": 1,
        "stories_total": 3,
        "calls_this_hour": 1,
        "max_calls_per_hour": 50,
    }
    assert publisher.read() == read_status_snapshot(project_dir / "status.json")


def test_render_status_lines_shows_top_pending(tmp_path: Path, make_project) -> None:
    project_dir = make_project(total=8, complete=1)
    snapshot = StatusSnapshot(
        timestamp="2026-05-10T05:00:00+00:00",
        status="success",
        loop_count=3,
        current_story="",
        stories_complete=1,
        stories_total=8,
        calls_this_hour=3,
        max_calls_per_hour=100,
    )

    lines = render_status_lines(
        project_name="demo",
        snapshot=snapshot,
        ledger=TaskLedger(project_dir / "prd.json").load(),
        breaker_lines=["Circuit breaker: CLOSED"],
    )

    assert "  Current story:   none" in lines
    assert "  Progress:        1/8 stories" in lines
    pending = [line for line in lines if line.startswith("  - [")]
    assert pending[0] == "  - [US-002] P2 Story number 2"
    assert len(pending) == 5
    assert lines[-1] == "Circuit breaker: CLOSED"


def test_unreadable_status_file_reads_as_none(tmp_path: Path) -> None:
    (tmp_path / "status.json").write_text("[1, 2]", "utf-8")

    assert read_status_snapshot(tmp_path / "status.json") is None
    assert read_status_snapshot(tmp_path / "missing.json") is None
