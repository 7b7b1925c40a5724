from __future__ import annotations

from pathlib import Path

import allure
import pytest

from story_loop.config import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_COMPLETE_TOKEN,
    AgentSettings,
    BreakerSettings,
    LoopSettings,
    Settings,
)

pytestmark = [
    allure.epic("Story Loop"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "STORY_LOOP_PROJECTS_ROOT",
    "STORY_LOOP_MAX_ITERATIONS",
    "MAX_ITERATIONS",
    "STORY_LOOP_MAX_CALLS_PER_HOUR",
    "MAX_CALLS_PER_HOUR",
    "STORY_LOOP_TIMEOUT_MINUTES",
    "CLAUDE_TIMEOUT_MINUTES",
    "STORY_LOOP_COMPLETE_TOKEN",
    "COMPLETE_TOKEN",
    "STORY_LOOP_AGENT_COMMAND",
    "STORY_LOOP_WORKDIR",
    "STORY_LOOP_SHOW_COUNTDOWN",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.projects_root == Path("projects")
    assert settings.loop.max_iterations == 0
    assert settings.loop.max_calls_per_hour == 100
    assert settings.loop.timeout_seconds == 20 * 60
    assert settings.loop.complete_token == DEFAULT_COMPLETE_TOKEN
    assert settings.loop.max_timeout_retries == 2
    assert settings.agent.command == DEFAULT_AGENT_COMMAND
    settings.validate_for_run()


def test_from_env_honours_legacy_names_and_prefers_new_ones(monkeypatch) -> None:
    monkeypatch.setenv("MAX_ITERATIONS", "7")
    monkeypatch.setenv("MAX_CALLS_PER_HOUR", "12")
    monkeypatch.setenv("STORY_LOOP_MAX_CALLS_PER_HOUR", "40")
    monkeypatch.setenv("CLAUDE_TIMEOUT_MINUTES", "3")
    monkeypatch.setenv("COMPLETE_TOKEN", "DONE!")

    settings = Settings.from_env()

    assert settings.loop.max_iterations == 7
    assert settings.loop.max_calls_per_hour == 40
    assert settings.loop.timeout_minutes == 3
    assert settings.loop.complete_token == "DONE!"


def test_explicit_projects_root_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORY_LOOP_PROJECTS_ROOT", "/nowhere")

    assert Settings.from_env(projects_root=tmp_path).projects_root == tmp_path
    assert Settings.from_env().project_dir("alpha") == Path("/nowhere/alpha")


def test_invalid_boolean_env_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("STORY_LOOP_SHOW_COUNTDOWN", "maybe")

    with pytest.raises(ValueError, match="STORY_LOOP_SHOW_COUNTDOWN"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(loop=LoopSettings(max_iterations=-1)), "MAX_ITERATIONS"),
        (Settings(loop=LoopSettings(max_calls_per_hour=0)), "MAX_CALLS_PER_HOUR"),
        (Settings(loop=LoopSettings(timeout_minutes=0)), "TIMEOUT_MINUTES"),
        (Settings(loop=LoopSettings(complete_token="  ")), "COMPLETE_TOKEN"),
        (Settings(loop=LoopSettings(error_cooldown_seconds=-1)), "ERROR_COOLDOWN_SECONDS"),
        (Settings(agent=AgentSettings(command="")), "AGENT_COMMAND"),
        (Settings(agent=AgentSettings(command="claude 'unterminated")), "AGENT_COMMAND"),
        (
            Settings(breaker=BreakerSettings(half_open_threshold=4, no_progress_threshold=3)),
            "NO_PROGRESS_THRESHOLD",
        ),
    ],
)
def test_validate_for_run_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_run()
