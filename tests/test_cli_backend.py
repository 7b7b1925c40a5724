from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from conftest import ECHO_AGENT_COMMAND, stories, write_ledger
from story_loop.loop.backend import AgentRunRequest, BackendRunError, CliAgentBackend
from story_loop.loop.backend.cli_backend import build_argv, read_output

pytestmark = [
    allure.epic("Story Loop"),
    allure.feature("Agent Subprocess"),
]


def _request(tmp_path: Path, command: str, **overrides) -> AgentRunRequest:
    values = {
        "command": command,
        "prompt": "Implement the next story.\n",
        "timeout_seconds": 30,
        "output_path": tmp_path / "logs" / "agent_a1.log",
        "workdir": tmp_path,
    }
    values.update(overrides)
    return AgentRunRequest(**values)


def test_prompt_is_fed_on_stdin_and_output_captured(tmp_path: Path) -> None:
    backend = CliAgentBackend(poll_interval_seconds=0.01)

    result = backend.run(
        _request(tmp_path, f"{ECHO_AGENT_COMMAND} --echo-prompt --output 'all good'"),
    )

    assert result.exit_code == 0
    assert result.timed_out is False
    output = read_output(result.output_path)
    assert "Implement the next story." in output
    assert "all good" in output


def test_non_zero_exit_code_is_reported(tmp_path: Path) -> None:
    backend = CliAgentBackend(poll_interval_seconds=0.01)

    result = backend.run(_request(tmp_path, f"{ECHO_AGENT_COMMAND} --exit-code 3"))

    assert result.exit_code == 3
    assert result.timed_out is False


def test_timeout_kills_agent_with_exit_124(tmp_path: Path) -> None:
    backend = CliAgentBackend(poll_interval_seconds=0.01)

    result = backend.run(
        _request(tmp_path, f"{ECHO_AGENT_COMMAND} --sleep 30", timeout_seconds=1),
    )

    assert result.exit_code == 124
    assert result.timed_out is True


def test_shutdown_request_terminates_agent(tmp_path: Path) -> None:
    backend = CliAgentBackend(poll_interval_seconds=0.01)

    result = backend.run(
        _request(
            tmp_path,
            f"{ECHO_AGENT_COMMAND} --sleep 30",
            shutdown_requested=lambda: True,
            graceful_shutdown_seconds=0,
        ),
    )

    assert result.interrupted is True
    assert result.exit_code == 130


def test_echo_agent_completes_next_story(tmp_path: Path) -> None:
    ledger_path = tmp_path / "prd.json"
    write_ledger(ledger_path, stories(2), branch_name="main")
    backend = CliAgentBackend(poll_interval_seconds=0.01)

    result = backend.run(
        _request(tmp_path, f"{ECHO_AGENT_COMMAND} --complete-story {ledger_path}"),
    )

    assert result.exit_code == 0
    output = read_output(result.output_path)
    assert "Modified: prd.json" in output
    assert "Completed story US-001" in output
    payload = json.loads(ledger_path.read_text("utf-8"))
    assert [story["passes"] for story in payload["userStories"]] == [True, False]


def test_missing_executable_raises_backend_error(tmp_path: Path) -> None:
    backend = CliAgentBackend()

    with pytest.raises(BackendRunError, match="Agent command not found: definitely-not"):
        backend.run(_request(tmp_path, "definitely-not-an-agent-binary-xyz"))


@pytest.mark.parametrize("command", ["", "   ", "agent 'unterminated"])
def test_build_argv_rejects_unusable_commands(command: str) -> None:
    with pytest.raises(BackendRunError):
        build_argv(command)


def test_build_argv_splits_like_a_shell() -> None:
    assert build_argv("python3 -m x --flag 'two words'") == [
        "python3",
        "-m",
        "x",
        "--flag",
        "two words",
    ]
